"""
Consistency-verification harness for novadbplus.

Provisions server nodes, drives write traffic while replication, backup /
restore and expiry work happen asynchronously, waits on polling barriers and
then checks that independently replicated or restored datasets agree.
"""

from .barrier import Barrier, wait_until
from .compare import Comparator, ComparisonResult, Divergence, ToleranceMode
from .config import HarnessConfig, load_config
from .errors import (
    AdmissionError,
    BarrierTimeout,
    ConfigRejected,
    DivergenceError,
    HarnessError,
    LaunchFailed,
    PortUnavailable,
    ProtocolError,
    ProvisionError,
    ReadinessTimeout,
    ToolFailed,
    WorkspaceError,
)
from .node import NodeController, NodeHandle, NodeSpec, find_available_port
from .orchestrator import Orchestrator, Scenario, ScenarioOutcome, ScenarioState
from .traffic import KeySpace, WriteLedger, cancel_populate, populate, populate_async

__version__ = "0.1.0"

__all__ = [
    "AdmissionError",
    "Barrier",
    "BarrierTimeout",
    "Comparator",
    "ComparisonResult",
    "ConfigRejected",
    "Divergence",
    "DivergenceError",
    "HarnessConfig",
    "HarnessError",
    "KeySpace",
    "LaunchFailed",
    "NodeController",
    "NodeHandle",
    "NodeSpec",
    "Orchestrator",
    "PortUnavailable",
    "ProtocolError",
    "ProvisionError",
    "ReadinessTimeout",
    "Scenario",
    "ScenarioOutcome",
    "ScenarioState",
    "ToleranceMode",
    "ToolFailed",
    "WorkspaceError",
    "WriteLedger",
    "cancel_populate",
    "find_available_port",
    "load_config",
    "populate",
    "populate_async",
    "wait_until",
]
