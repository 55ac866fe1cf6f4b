from typing import Iterable, List

from ..config import HarnessConfig
from ..orchestrator import Scenario
from .dts import DistributedSyncScenario
from .memory_limit import OutputBufferScenario
from .replication import ReplicationScenario
from .restore import BackupRestoreScenario

SCENARIO_NAMES = ("repl", "restore", "dts", "memorylimit")


def build_scenarios(names: Iterable[str], config: HarnessConfig) -> List[Scenario]:
    """Instantiate scenarios by name; 'all' expands to every scenario."""
    scenarios: List[Scenario] = []
    for name in names:
        if name == "all":
            scenarios.extend(build_scenarios(SCENARIO_NAMES, config))
        elif name == "repl":
            scenarios.append(ReplicationScenario())
        elif name == "restore":
            # second mode moves its ports up to avoid TIME_WAIT leftovers
            scenarios.append(BackupRestoreScenario("copy"))
            scenarios.append(BackupRestoreScenario("ckpt", config.ports.mode_offset))
        elif name == "dts":
            scenarios.append(DistributedSyncScenario())
        elif name == "memorylimit":
            scenarios.append(OutputBufferScenario())
        else:
            raise ValueError(f"Unknown scenario {name!r}, expected one of {SCENARIO_NAMES + ('all',)}")
    return scenarios


__all__ = [
    "SCENARIO_NAMES",
    "BackupRestoreScenario",
    "DistributedSyncScenario",
    "OutputBufferScenario",
    "ReplicationScenario",
    "build_scenarios",
]
