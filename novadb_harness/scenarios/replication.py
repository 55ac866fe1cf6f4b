"""
Replication catch-up.

Populate the master, bind the slave, keep writing while the slave does its
full sync and catches up, then compare both datasets strictly.
"""

import asyncio

from ..orchestrator import Scenario, ScenarioContext, ScenarioState
from ..traffic import cancel_populate, populate, populate_async


class ReplicationScenario(Scenario):
    name = "repl"

    async def run(self, ctx: ScenarioContext) -> None:
        config = ctx.config
        workload = config.workload
        stores = config.kvstore_count

        node_config = {
            "maxBinlogKeepNum": str(workload.num2 * 5),
            "kvstorecount": str(stores),
            "rocks.blockcachemb": "1024",
            "requirepass": config.password,
            "direct-io": "true",
        }
        master = await ctx.node("m1_", config.ports.master, node_config)
        slave = await ctx.node("s1_", config.ports.slave, {**node_config, "masterauth": config.password})

        ctx.enter(ScenarioState.LOADING)
        await populate(master, ctx.auth, workload.num1, 0, workload.keyprefix1,
                       optype=workload.optype, batch_size=workload.batch_size)
        await ctx.controller.bind_replica(master, slave)

        ctx.enter(ScenarioState.SYNCING)
        written = populate_async(master, ctx.auth, workload.num2, 0, workload.keyprefix2,
                                 optype=workload.optype, batch_size=workload.batch_size)

        async def full_sync_then_catchup():
            await ctx.barrier.wait_full_resync(slave, stores)
            await ctx.barrier.wait_catchup(master, slave, stores)

        catchup = asyncio.ensure_future(full_sync_then_catchup())
        try:
            finished, _ = await asyncio.wait({catchup, written}, return_when=asyncio.FIRST_EXCEPTION)
            for future in finished:
                future.result()
        finally:
            # whichever side is still running must not outlive this step
            catchup.cancel()
            await cancel_populate(written)
            await asyncio.gather(catchup, return_exceptions=True)
        # the concurrent catch-up target predates the last writes
        await ctx.barrier.wait_catchup(master, slave, stores)

        if config.compare:
            ctx.enter(ScenarioState.VERIFYING)
            await ctx.compare(master, slave)
