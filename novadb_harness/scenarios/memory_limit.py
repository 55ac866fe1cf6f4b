"""Client output-buffer limit enforcement under every limit combination."""

from typing import Sequence

from ..admission import LIMIT_MATRIX, AdmissionProbe, OutputBufferLimits
from ..orchestrator import Scenario, ScenarioContext, ScenarioState
from ..traffic import fill_list

STORES = 2


class OutputBufferScenario(Scenario):
    name = "memorylimit"

    def __init__(self, matrix: Sequence[OutputBufferLimits] = LIMIT_MATRIX):
        self.matrix = list(matrix)

    async def run(self, ctx: ScenarioContext) -> None:
        config = ctx.config
        limits = config.limits

        node_config = {
            "kvstorecount": str(STORES),
            "requirepass": config.password,
            "masterauth": config.password,
            **OutputBufferLimits(hard_mb=2, soft_mb=1, soft_seconds=5).settings(),
        }
        node = await ctx.node("m1_", config.ports.master, node_config)

        ctx.enter(ScenarioState.LOADING)
        await fill_list(node, ctx.auth, limits.list_key, limits.list_length, limits.element)

        ctx.enter(ScenarioState.VERIFYING)
        probe = AdmissionProbe(node, ctx.auth, limits)
        for combination in self.matrix:
            for key, value in combination.settings().items():
                await ctx.controller.reconfigure(node, key, value)
            await probe.run(combination)
