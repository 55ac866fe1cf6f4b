"""
Distributed-sync cutover.

A master with a bound slave, and a target with expiry deferred (noexpire)
fed by the distributed-sync tool. Volatile keys are written with TTLs, so
slave and target legitimately disagree until expiry is re-enabled on the
target and the sweep has run everywhere; after that all three nodes must hold
the same data.
"""

from ..compare import ToleranceMode
from ..orchestrator import Scenario, ScenarioContext, ScenarioState
from ..tools import SyncWindow, run_dts
from ..traffic import WriteLedger, add_mixed_data

STORES = 1


class DistributedSyncScenario(Scenario):
    name = "dts"

    def __init__(self, window: SyncWindow = SyncWindow()):
        self.window = window

    async def run(self, ctx: ScenarioContext) -> None:
        config = ctx.config
        workload = config.workload

        node_config = {
            "aof-enabled": "yes",
            "kvStoreCount": str(STORES),
            "noexpire": "false",
            "generallog": "true",
        }
        master = await ctx.node("m_", config.ports.master, node_config)
        slave = await ctx.node("s_", config.ports.slave, node_config)
        await ctx.controller.bind_replica(master, slave)
        target = await ctx.node("t_", config.ports.target,
                                {**node_config, "aof-enabled": "false", "noexpire": "yes"})

        ledger = WriteLedger(ctx.clock)
        mixed = dict(ttl=workload.mixed_ttl, ttl_every=workload.mixed_ttl_every, ledger=ledger)

        ctx.enter(ScenarioState.LOADING)
        await add_mixed_data(master, master.password, "first", workload.mixed_count, **mixed)
        await run_dts(config.tools.dts, master, target, self.window, timeout=config.tools.timeout)
        await add_mixed_data(master, master.password, "second", workload.mixed_count,
                             start=workload.mixed_count, **mixed)

        ctx.enter(ScenarioState.SYNCING)
        await ctx.barrier.wait_catchup(master, slave, STORES)

        ctx.enter(ScenarioState.VERIFYING)
        # the target does not expire anything yet
        await ctx.compare(slave, target, ToleranceMode.EXPIRY_TOLERANT, ledger=ledger)
        await ctx.controller.reconfigure(target, "noexpire", "false")
        await ctx.compare(target, slave, ToleranceMode.EXPIRY_TOLERANT, ledger=ledger)

        ctx.enter(ScenarioState.SYNCING)
        await ctx.barrier.wait_expiry_sweep([master, slave, target], ledger)

        ctx.enter(ScenarioState.VERIFYING)
        await ctx.compare(master, target)
        await ctx.compare(master, slave)
