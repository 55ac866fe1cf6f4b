"""
Convergence barriers.

Every barrier is a bounded poll: read administrative counters, sleep
poll_interval, repeat until the condition holds or the deadline passes.
Polling only reads counters, so it is safe to run alongside traffic against
the same node.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import BarrierConfig
from .errors import BarrierTimeout, DivergenceError
from .logger import console
from .node import NodeHandle
from .progress import SYNC_DONE_STATE, binlog_pos, binlog_positions, pending_binlog, sync_states
from .traffic import WriteLedger

logger = logging.getLogger(__name__)

EXISTS_CHUNK = 500


class Pending:
    """Falsy poll result that still says what is being waited on."""

    def __init__(self, detail: str):
        self.detail = detail

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return self.detail


async def wait_until(predicate: Callable[[], Any],
                     timeout: float = 30.0,
                     interval: float = 0.5,
                     description: str = "condition",
                     clock: Callable[[], float] = time.monotonic) -> Any:
    """
    Poll predicate until it returns something truthy.

    The predicate may be sync or async. Connection errors while polling are
    remembered and polling continues (a node may be restarting); any other
    exception propagates. The predicate is always evaluated at least once.

    Returns:
        The first truthy predicate result

    Raises:
        BarrierTimeout: if the condition is not met within timeout
    """
    start = clock()
    last_result = None

    while True:
        try:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return result
            last_result = result
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            last_result = e

        if clock() - start >= timeout:
            raise BarrierTimeout(description, timeout, last_result)
        await asyncio.sleep(interval)


class MarkerTracker:
    """
    Per-store progress against targets captured at barrier start.

    A store counts as converged only when its latest marker reaches the target
    and is not below the highest marker seen so far; a marker that moves
    backwards (a restart, a stale read) keeps the barrier waiting.
    """

    def __init__(self, targets: Mapping[int, int]):
        self.targets = dict(targets)
        self.highest: Dict[int, int] = {}

    def observe(self, store: int, value: int) -> bool:
        highest = self.highest.get(store)
        if highest is not None and value < highest:
            logger.debug("store %d marker went back from %d to %d", store, highest, value)
            return False
        self.highest[store] = value
        return value >= self.targets[store]


class Barrier:
    def __init__(self, config: Optional[BarrierConfig] = None):
        self.config = config or BarrierConfig()

    def _timeout(self, deadline: Optional[float], default: float) -> float:
        return default if deadline is None else deadline

    async def wait_full_resync(self, follower: NodeHandle, store_count: int,
                               deadline: Optional[float] = None) -> None:
        """Wait until every store on the follower has finished its initial full sync."""

        async def all_online():
            states = await sync_states(follower)
            waiting = {s: states.get(s, "absent") for s in range(store_count)
                       if states.get(s) != SYNC_DONE_STATE}
            if waiting:
                return Pending(f"stores not online: {waiting}")
            return True

        await wait_until(
            all_online,
            timeout=self._timeout(deadline, self.config.resync_timeout),
            interval=self.config.poll_interval,
            description=f"full sync of {store_count} stores on {follower.addr}",
        )
        console.print(f"[green]{follower.addr} finished full sync[/green]")

    async def wait_catchup(self, leader: NodeHandle, follower: NodeHandle, store_count: int,
                           deadline: Optional[float] = None) -> Dict[int, int]:
        """
        Wait until the follower has applied everything the leader had at call time.

        Returns:
            The leader markers captured at call time

        Raises:
            BarrierTimeout: if some store is still behind at the deadline
            DivergenceError: if a follower store runs ahead of the leader
        """
        targets = await binlog_positions(leader, store_count)
        tracker = MarkerTracker(targets)
        logger.info("Waiting for %s to catch up with %s at %s", follower.addr, leader.addr, targets)

        async def caught_up():
            behind = {}
            for store in range(store_count):
                value = (await binlog_pos(follower, store)).value
                if not tracker.observe(store, value):
                    behind[store] = (value, targets[store])
                elif value > targets[store]:
                    # leader markers only grow, so reading it after the follower is safe
                    current = (await binlog_pos(leader, store)).value
                    if value > current:
                        raise DivergenceError(
                            f"store {store} on {follower.addr} is at {value}, "
                            f"ahead of leader {leader.addr} at {current}"
                        )
            if behind:
                return Pending(f"stores behind as (follower, target): {behind}")
            return True

        await wait_until(
            caught_up,
            timeout=self._timeout(deadline, self.config.catchup_timeout),
            interval=self.config.poll_interval,
            description=f"{follower.addr} catch-up with {leader.addr}",
        )
        console.print(f"[green]{follower.addr} caught up with {leader.addr}[/green]")
        return targets

    async def wait_backlog_drain(self, handle: NodeHandle, store_count: int,
                                 deadline: Optional[float] = None) -> None:
        """Wait until no store has binlog entries left to dump."""

        async def drained():
            pending = await pending_binlog(handle)
            busy = {s: pending.get(s) for s in range(store_count) if pending.get(s) != 0}
            if busy:
                return Pending(f"stores with pending binlog: {busy}")
            return True

        await wait_until(
            drained,
            timeout=self._timeout(deadline, self.config.drain_timeout),
            interval=self.config.poll_interval,
            description=f"binlog drain on {handle.addr}",
        )
        console.print(f"[green]{handle.addr} binlog drained[/green]")

    async def wait_expiry_sweep(self, handles: Sequence[NodeHandle], ledger: WriteLedger,
                                deadline: Optional[float] = None) -> None:
        """Wait until every volatile key in the ledger is past its TTL and gone from all nodes."""

        async def swept():
            expired = ledger.expired()
            if len(expired) < len(ledger):
                return Pending(f"{len(ledger) - len(expired)} keys not yet past their TTL")
            lingering = {}
            for handle in handles:
                count = 0
                for i in range(0, len(expired), EXISTS_CHUNK):
                    count += await handle.client.exists(*expired[i:i + EXISTS_CHUNK])
                if count:
                    lingering[handle.addr] = count
            if lingering:
                return Pending(f"expired keys still present: {lingering}")
            return True

        await wait_until(
            swept,
            timeout=self._timeout(deadline, self.config.expiry_timeout),
            interval=self.config.poll_interval,
            description=f"expiry sweep of {len(ledger)} keys",
        )
        console.print(f"[green]{len(ledger)} volatile keys expired on all nodes[/green]")
