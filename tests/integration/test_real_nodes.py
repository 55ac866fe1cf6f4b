"""
Scenario runs against real novadbplus processes.

These launch the server binary (NOVADB_HARNESS_BINARY or novadbplus on PATH)
and are skipped when it is not available. Workloads are scaled down so a run
takes seconds rather than minutes.

Usage:
    NOVADB_HARNESS_BINARY=/path/to/novadbplus pytest tests/integration -m integration
"""

import pytest

from novadb_harness.admission import LIMIT_MATRIX
from novadb_harness.config import BarrierConfig, HarnessConfig, PortConfig, WorkloadConfig
from novadb_harness.node import NodeController
from novadb_harness.orchestrator import Orchestrator
from novadb_harness.scenarios import OutputBufferScenario, ReplicationScenario

pytestmark = [pytest.mark.integration, pytest.mark.slow]


@pytest.fixture
def real_config(novadb_binary, tmp_path):
    return HarnessConfig(
        binary=novadb_binary,
        work_dir=tmp_path,
        kvstore_count=2,
        backup_dir=tmp_path / "backup",
        ports=PortConfig(master=43001, slave=43002, target=43003),
        workload=WorkloadConfig(num1=2000, num2=2000, batch_size=200),
        barrier=BarrierConfig(poll_interval=0.5),
    )


class TestNodeLifecycle:
    @pytest.mark.asyncio
    async def test_provision_and_teardown(self, real_config):
        controller = NodeController(real_config)
        spec = controller.make_spec("m1_", real_config.ports.master,
                                    {"requirepass": real_config.password})

        async with controller.scoped(spec) as handle:
            assert await handle.client.ping()
            path = handle.spec.path
            assert handle.spec.conf_file.exists()

        assert handle.process.returncode is not None
        assert not path.exists()


class TestScenarios:
    @pytest.mark.asyncio
    async def test_replication(self, real_config):
        outcome = await Orchestrator(real_config).run(ReplicationScenario())
        assert outcome.passed, outcome.error

    @pytest.mark.asyncio
    async def test_output_buffer_limits_without_soft_timer(self, real_config):
        matrix = [limits for limits in LIMIT_MATRIX if not limits.soft_seconds]
        outcome = await Orchestrator(real_config).run(OutputBufferScenario(matrix))
        assert outcome.passed, outcome.error
