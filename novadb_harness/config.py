"""
Harness configuration.

Scenario parameters (ports, credentials, store counts, workload sizes,
barrier deadlines) live in one explicit HarnessConfig that is handed to the
orchestrator. Values are layered: dataclass defaults, then an optional TOML
file, then NOVADB_HARNESS_* environment variables, then CLI flags.

Example TOML:

    binary = "novadbplus"
    password = "novadb+test"
    kvstore_count = 10

    [ports]
    master = 41001
    slave = 41002

    [barrier]
    poll_interval = 1.0
    catchup_timeout = 60

    [workload]
    num1 = 100000
    keyprefix1 = "aa"
"""

import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import toml

DEFAULT_PASSWORD = "novadb+test"


@dataclass
class PortConfig:
    master: int = 41001
    slave: int = 41002
    target: int = 41003
    # restore runs twice; the second mode starts this far up to dodge TIME_WAIT
    mode_offset: int = 100


@dataclass
class WorkloadConfig:
    num1: int = 100000
    num2: int = 100000
    keyprefix1: str = "aa"
    keyprefix2: str = "bb"
    batch_size: int = 1000
    optype: str = "set"
    # mixed typed data written by the distributed-sync scenario
    mixed_count: int = 2000
    mixed_ttl: int = 60
    mixed_ttl_every: int = 4


@dataclass
class BarrierConfig:
    poll_interval: float = 1.0
    resync_timeout: float = 60.0
    catchup_timeout: float = 60.0
    drain_timeout: float = 60.0
    expiry_timeout: float = 180.0


@dataclass
class CompareConfig:
    batch_size: int = 500
    scan_count: int = 1000
    # how long past its nominal TTL a key may linger on one node only
    expiry_grace: float = 2.0
    check_ttl: bool = True


@dataclass
class LimitConfig:
    list_key: str = "l1"
    list_length: int = 100000
    element: str = "100000000000000"
    soft_range_end: int = 30000
    hard_range_end: int = 60000
    soft_wait: float = 15.0
    client_timeout: float = 80.0


@dataclass
class ToolConfig:
    binlog_restore: str = "binlog_tool"
    dts: str = "checkdts"
    timeout: float = 600.0


@dataclass
class HarnessConfig:
    host: str = "127.0.0.1"
    binary: str = "novadbplus"
    work_dir: Path = field(default_factory=Path.cwd)
    password: str = DEFAULT_PASSWORD
    kvstore_count: int = 10
    ready_timeout: float = 30.0
    keep_alive: bool = False
    keep_data: bool = False
    startup: bool = True
    compare: bool = True
    keep_going: bool = False
    valgrind: bool = False
    backup_dir: Path = Path("/tmp/back_test")
    ports: PortConfig = field(default_factory=PortConfig)
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    barrier: BarrierConfig = field(default_factory=BarrierConfig)
    comparison: CompareConfig = field(default_factory=CompareConfig)
    limits: LimitConfig = field(default_factory=LimitConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HarnessConfig":
        return _merge(cls(), data)

    def with_overrides(self, **overrides: Any) -> "HarnessConfig":
        """Return a copy with non-None top-level overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


# env var -> (section or None, attribute)
ENV_OVERRIDES = {
    "NOVADB_HARNESS_BINARY": (None, "binary"),
    "NOVADB_HARNESS_HOST": (None, "host"),
    "NOVADB_HARNESS_PASSWORD": (None, "password"),
    "NOVADB_HARNESS_KVSTORECOUNT": (None, "kvstore_count"),
    "NOVADB_HARNESS_WORK_DIR": (None, "work_dir"),
    "NOVADB_HARNESS_NUM1": ("workload", "num1"),
    "NOVADB_HARNESS_NUM2": ("workload", "num2"),
    "NOVADB_HARNESS_POLL_INTERVAL": ("barrier", "poll_interval"),
    "NOVADB_HARNESS_EXPIRY_GRACE": ("comparison", "expiry_grace"),
}


def _coerce(value: Any, current: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, Path):
        return Path(value)
    return value


def _merge(target: Any, data: Mapping[str, Any]) -> Any:
    known = {f.name for f in fields(target)}
    changes = {}
    for key, value in data.items():
        if key not in known:
            raise ValueError(f"Unknown configuration key: {key}")
        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ValueError(f"Configuration section [{key}] must be a table")
            changes[key] = _merge(current, value)
        else:
            changes[key] = _coerce(value, current)
    return replace(target, **changes)


def apply_env(config: HarnessConfig, environ: Optional[Mapping[str, str]] = None) -> HarnessConfig:
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for name, (section, attr) in ENV_OVERRIDES.items():
        if name not in environ:
            continue
        if section is None:
            data[attr] = environ[name]
        else:
            data.setdefault(section, {})[attr] = environ[name]
    return _merge(config, data) if data else config


def load_config(path: Optional[Path] = None,
                environ: Optional[Mapping[str, str]] = None) -> HarnessConfig:
    """Build a HarnessConfig from defaults, an optional TOML file and the environment."""
    config = HarnessConfig()
    if path is not None:
        with open(path) as f:
            config = _merge(config, toml.load(f))
    return apply_env(config, environ)
