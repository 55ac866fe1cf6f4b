"""
Scenario orchestration.

A scenario is a sequence of calls into the node controller, traffic
generator, barrier and comparator. Each run moves through

    provisioning -> loading -> syncing -> verifying -> tearing_down -> passed | failed

(multi-phase scenarios cycle through loading/syncing/verifying more than
once). The first failure stops the scenario; every node it opened is still
torn down, because nodes are registered on the run's AsyncExitStack as soon
as they are up.
"""

import enum
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from redis.exceptions import RedisError
from rich.panel import Panel
from rich.table import Table

from .barrier import Barrier
from .compare import Comparator, ComparisonResult, ToleranceMode
from .config import HarnessConfig
from .errors import HarnessError
from .logger import console
from .node import ClientFactory, NodeController, NodeHandle

logger = logging.getLogger(__name__)


class ScenarioState(enum.Enum):
    PROVISIONING = "provisioning"
    LOADING = "loading"
    SYNCING = "syncing"
    VERIFYING = "verifying"
    TEARING_DOWN = "tearing_down"
    PASSED = "passed"
    FAILED = "failed"


TERMINAL_STATES = (ScenarioState.PASSED, ScenarioState.FAILED)


@dataclass(frozen=True)
class ScenarioOutcome:
    name: str
    passed: bool
    state: ScenarioState
    error: Optional[str] = None
    duration: float = 0.0


class ScenarioContext:
    """What a running scenario gets to work with."""

    def __init__(self, name: str, config: HarnessConfig, controller: NodeController,
                 barrier: Barrier, comparator: Comparator, stack: AsyncExitStack,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.config = config
        self.controller = controller
        self.barrier = barrier
        self.comparator = comparator
        self._stack = stack
        # wall clock shared by write ledgers and the comparator
        self.clock = clock
        self.state = ScenarioState.PROVISIONING
        self.history: List[ScenarioState] = [self.state]
        self.comparisons: List[ComparisonResult] = []

    @property
    def auth(self) -> str:
        return self.config.password

    def enter(self, state: ScenarioState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Scenario {self.name} already {self.state.value}")
        if state is not self.state:
            logger.info("[%s] %s -> %s", self.name, self.state.value, state.value)
            self.state = state
            self.history.append(state)

    async def node(self, role: str, port: int,
                   extra: Optional[Mapping[str, str]] = None) -> NodeHandle:
        """Open a node whose teardown is guaranteed when the scenario ends."""
        handle = await self.controller.open(self.controller.make_spec(role, port, extra))
        self._stack.push_async_callback(self.controller.teardown, handle)
        return handle

    async def compare(self, a: NodeHandle, b: NodeHandle,
                      mode: ToleranceMode = ToleranceMode.STRICT, **kwargs) -> ComparisonResult:
        """Compare and fail the scenario on any divergence."""
        result = await self.comparator.compare(a, b, mode, **kwargs)
        self.comparisons.append(result)
        result.raise_for_divergence()
        return result


class Scenario:
    name = "scenario"

    async def run(self, ctx: ScenarioContext) -> None:
        raise NotImplementedError


class Orchestrator:
    def __init__(self, config: HarnessConfig, client_factory: Optional[ClientFactory] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self._client_factory = client_factory
        self._clock = clock
        self.contexts: Dict[str, ScenarioContext] = {}

    async def run(self, scenario: Scenario) -> ScenarioOutcome:
        console.rule(f"[bold]{scenario.name}")
        start = time.monotonic()
        controller = NodeController(self.config, self._client_factory)
        error: Optional[BaseException] = None
        last_state = ScenarioState.PROVISIONING

        ctx: Optional[ScenarioContext] = None
        try:
            async with AsyncExitStack() as stack:
                ctx = ScenarioContext(
                    scenario.name, self.config, controller,
                    Barrier(self.config.barrier), Comparator(self.config.comparison, self._clock),
                    stack, self._clock,
                )
                self.contexts[scenario.name] = ctx
                try:
                    await scenario.run(ctx)
                except (HarnessError, RedisError) as e:
                    error = e
                    logger.error("Scenario %s failed while %s: %s", scenario.name, ctx.state.value, e)
                finally:
                    last_state = ctx.state
                    ctx.enter(ScenarioState.TEARING_DOWN)
        except (HarnessError, RedisError) as e:
            logger.error("Teardown of scenario %s failed: %s", scenario.name, e)
            if error is None:
                error = e

        if ctx is not None:
            ctx.enter(ScenarioState.FAILED if error else ScenarioState.PASSED)
        outcome = ScenarioOutcome(
            name=scenario.name,
            passed=error is None,
            state=last_state,
            error=None if error is None else f"{type(error).__name__}: {error}",
            duration=time.monotonic() - start,
        )
        self._report(outcome)
        return outcome

    async def run_all(self, scenarios: Iterable[Scenario]) -> List[ScenarioOutcome]:
        """Run scenarios in order; stop at the first failure unless keep_going is set."""
        scenarios = list(scenarios)
        outcomes: List[ScenarioOutcome] = []
        for index, scenario in enumerate(scenarios):
            outcome = await self.run(scenario)
            outcomes.append(outcome)
            if not outcome.passed and not self.config.keep_going:
                skipped = [s.name for s in scenarios[index + 1:]]
                if skipped:
                    console.print(f"[yellow]Stopping after {outcome.name}; skipped: "
                                  f"{', '.join(skipped)}[/yellow]")
                break
        return outcomes

    def _report(self, outcome: ScenarioOutcome) -> None:
        if outcome.passed:
            console.print(f"[green]✅ {outcome.name} passed in {outcome.duration:.1f}s[/green]")
        else:
            console.print(Panel(
                outcome.error or "",
                title=f"❌ {outcome.name} failed while {outcome.state.value}",
                border_style="red",
            ))


def print_summary(outcomes: List[ScenarioOutcome]) -> None:
    table = Table(title="Scenario summary")
    table.add_column("Scenario")
    table.add_column("Status")
    table.add_column("Reached")
    table.add_column("Time", justify="right")
    for outcome in outcomes:
        status = "[green]PASSED[/green]" if outcome.passed else "[red]FAILED[/red]"
        table.add_row(outcome.name, status, outcome.state.value, f"{outcome.duration:.1f}s")
    console.print(table)
