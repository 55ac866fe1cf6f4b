"""
Backup and restore.

Back up a populated node into a second node, check the copy, then write more
data, dump and flush the binlog and replay it onto the restored node with the
binlog restore tool, and check again.
"""

from ..backup import (
    backup,
    expect_backup_rejected,
    flush_binlog,
    prepare_backup_dir,
    restore_backup,
)
from ..orchestrator import Scenario, ScenarioContext, ScenarioState
from ..tools import MAX_BINLOG_ID, restore_binlog
from ..traffic import add_one_key_every_store, populate


class BackupRestoreScenario(Scenario):
    def __init__(self, mode: str = "copy", port_offset: int = 0):
        self.mode = mode
        self.port_offset = port_offset
        self.name = f"restore-{mode}"

    async def run(self, ctx: ScenarioContext) -> None:
        config = ctx.config
        workload = config.workload
        stores = config.kvstore_count

        node_config = {
            "maxBinlogKeepNum": "1",
            "kvstorecount": str(stores),
            "requirepass": config.password,
            "masterauth": config.password,
            "truncateBinlogNum": "1",
        }
        source = await ctx.node("m1_", config.ports.master + self.port_offset, node_config)
        restored = await ctx.node("m2_", config.ports.slave + self.port_offset, node_config)

        db_path = await ctx.controller.db_path(source)
        await expect_backup_rejected(source, db_path, self.mode, "dir cant be dbPath")
        await expect_backup_rejected(source, "dir_not_exist", self.mode,
                                     "dir not exist", "No such file or directory")

        ctx.enter(ScenarioState.LOADING)
        await populate(source, ctx.auth, workload.num1, 0, workload.keyprefix1,
                       batch_size=workload.batch_size)

        ctx.enter(ScenarioState.SYNCING)
        backup_dir = prepare_backup_dir(config.backup_dir)
        await backup(source, backup_dir, self.mode)
        await restore_backup(restored, backup_dir)

        ctx.enter(ScenarioState.VERIFYING)
        await ctx.compare(source, restored)

        ctx.enter(ScenarioState.LOADING)
        await populate(source, ctx.auth, workload.num2, 0, workload.keyprefix2,
                       batch_size=workload.batch_size)
        await add_one_key_every_store(source, ctx.auth, stores)

        ctx.enter(ScenarioState.SYNCING)
        await ctx.barrier.wait_backlog_drain(source, stores)
        await flush_binlog(source)
        await restore_binlog(config.tools.binlog_restore, source, restored, stores,
                             end=MAX_BINLOG_ID, password=config.password,
                             timeout=config.tools.timeout)
        await add_one_key_every_store(restored, ctx.auth, stores)

        ctx.enter(ScenarioState.VERIFYING)
        await ctx.compare(source, restored)
