"""
Node lifecycle management for novadbplus server processes.

This module provides:
- NodeSpec: identity and configuration of one node (immutable once launched)
- NodeHandle: a running node, its process and its connection factory
- NodeController: provisioning, live reconfiguration, replica binding and
  teardown with guaranteed release
"""

import asyncio
import logging
import shutil
import socket
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import HarnessConfig
from .errors import (
    ConfigRejected,
    LaunchFailed,
    PortUnavailable,
    ProtocolError,
    ReadinessTimeout,
)
from .logger import console

logger = logging.getLogger(__name__)

CONF_NAME = "novadbplus.conf"
PORT_SEARCH_WINDOW = 100
STOP_TIMEOUT = 5
READY_POLL_INTERVAL = 0.1
CONNECT_TIMEOUT = 5

ClientFactory = Callable[..., aioredis.Redis]


def default_client_factory(**kwargs) -> aioredis.Redis:
    kwargs.setdefault("decode_responses", True)
    kwargs.setdefault("socket_connect_timeout", CONNECT_TIMEOUT)
    return aioredis.Redis(**kwargs)


def find_available_port(start_port: int, host: str = "127.0.0.1",
                        window: int = PORT_SEARCH_WINDOW) -> int:
    """
    Find a bindable port starting from start_port and probing upward.

    Raises:
        PortUnavailable: if nothing in [start_port, start_port + window) is free
    """
    for port in range(start_port, start_port + window):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
        return port

    raise PortUnavailable(f"No available ports found in {host}:{start_port}-{start_port + window - 1}")


@dataclass(frozen=True)
class NodeSpec:
    """Where a node lives and how it is configured."""

    host: str
    port: int
    role: str
    work_dir: Path
    config: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "work_dir", Path(self.work_dir))
        object.__setattr__(
            self, "config", MappingProxyType({str(k): str(v) for k, v in self.config.items()})
        )

    @property
    def addr(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def path(self) -> Path:
        return self.work_dir / f"{self.role}{self.port}"

    @property
    def db_path(self) -> Path:
        return self.path / "db"

    @property
    def dump_path(self) -> Path:
        return self.path / "dump"

    @property
    def log_path(self) -> Path:
        return self.path / "log"

    @property
    def conf_file(self) -> Path:
        return self.path / CONF_NAME

    @property
    def password(self) -> Optional[str]:
        return self.config.get("requirepass")

    def with_port(self, port: int) -> "NodeSpec":
        return replace(self, port=port, config=dict(self.config))


def base_config(spec: NodeSpec) -> Dict[str, str]:
    return {
        "bind": spec.host,
        "port": str(spec.port),
        "loglevel": "debug",
        "logdir": str(spec.log_path),
        "dir": str(spec.db_path),
        "dumpdir": str(spec.dump_path),
        "pidfile": str(spec.path / "novadbplus.pid"),
        "slowlog": str(spec.log_path / "slowlog"),
        "rocks.blockcachemb": "4096",
    }


def render_config(spec: NodeSpec) -> str:
    """Render the node config file; per-node entries win over the defaults."""
    merged = base_config(spec)
    merged.update(spec.config)
    return "".join(f"{key} {value}\n" for key, value in merged.items())


def _tail(path: Path, lines: int = 40) -> str:
    try:
        return "\n".join(path.read_text(errors="replace").splitlines()[-lines:])
    except OSError:
        return ""


class NodeHandle:
    """A running node bound to its NodeSpec.

    The handle owns the server process (None when attached to a node started
    elsewhere) and a pooled admin client. Other components open private
    clients through connect() and close them themselves.
    """

    def __init__(self, spec: NodeSpec, process: Optional[asyncio.subprocess.Process] = None,
                 client_factory: Optional[ClientFactory] = None,
                 password: Optional[str] = None):
        self.spec = spec
        self.process = process
        self.password = password if password is not None else spec.password
        self._client_factory = client_factory or default_client_factory
        self._client: Optional[aioredis.Redis] = None
        self.released = False

    def __repr__(self) -> str:
        return f"NodeHandle({self.spec.role}{self.addr})"

    @property
    def host(self) -> str:
        return self.spec.host

    @property
    def port(self) -> int:
        return self.spec.port

    @property
    def addr(self) -> str:
        return self.spec.addr

    def connect(self, password: Optional[str] = None, db: int = 0, **kwargs) -> aioredis.Redis:
        """Open a private client. The caller is responsible for closing it."""
        if self.released:
            raise ProtocolError(f"{self.addr} has been released; no new connections")
        return self._open(password, db, **kwargs)

    def _open(self, password: Optional[str] = None, db: int = 0, **kwargs) -> aioredis.Redis:
        if password is None:
            password = self.password
        return self._client_factory(host=self.host, port=self.port, password=password, db=db, **kwargs)

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = self.connect()
        return self._client

    async def execute(self, *args):
        """Run an administrative command, wrapping error replies in ProtocolError."""
        try:
            return await self.client.execute_command(*args)
        except ResponseError as e:
            command = " ".join(str(a) for a in args)
            raise ProtocolError(f"{self.addr} '{command}' failed: {e}") from e

    async def info(self, section: str) -> Dict:
        try:
            return await self.client.info(section)
        except ResponseError as e:
            raise ProtocolError(f"{self.addr} 'INFO {section}' failed: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


async def current_leader(follower: NodeHandle) -> Optional[Tuple[str, int]]:
    """The (host, port) the follower replicates from, or None."""
    info = await follower.info("replication")
    host = info.get("master_host")
    if not host:
        return None
    return str(host), int(info.get("master_port", 0))


class NodeController:
    """Provisions, reconfigures and tears down nodes for one scenario run."""

    def __init__(self, config: HarnessConfig, client_factory: Optional[ClientFactory] = None):
        self.config = config
        self._client_factory = client_factory

    def make_spec(self, role: str, port: int, extra: Optional[Mapping[str, str]] = None) -> NodeSpec:
        return NodeSpec(
            host=self.config.host,
            port=port,
            role=role,
            work_dir=self.config.work_dir,
            config=dict(extra or {}),
        )

    def _command(self, spec: NodeSpec) -> List[str]:
        cmd = [self.config.binary, str(spec.conf_file)]
        if self.config.valgrind:
            cmd = [
                "valgrind", "--tool=memcheck", "--leak-check=full",
                f"--log-file={spec.log_path / 'valgrind.log'}",
            ] + cmd
        return cmd

    async def open(self, spec: NodeSpec) -> NodeHandle:
        """Provision a fresh node, or attach to a running one when startup is disabled."""
        if self.config.startup:
            return await self.provision(spec)
        return await self.attach(spec)

    async def provision(self, spec: NodeSpec) -> NodeHandle:
        """Allocate a port, write the config, launch the process and wait until it answers."""
        port = find_available_port(spec.port, spec.host)
        if port != spec.port:
            spec = spec.with_port(port)
        logger.info("Allocated port %d for %s", port, spec.role)

        try:
            if spec.path.exists():
                logger.warning("Removing stale node directory %s", spec.path)
                shutil.rmtree(spec.path)
            for directory in (spec.db_path, spec.dump_path, spec.log_path):
                directory.mkdir(parents=True, exist_ok=True)
            spec.conf_file.write_text(render_config(spec))
        except OSError as e:
            raise LaunchFailed(f"Cannot prepare {spec.path} for {spec.addr}: {e}") from e

        cmd = self._command(spec)
        console.print(f"[blue]Starting node {spec.role}{spec.port}: {' '.join(cmd)}[/blue]")

        with open(spec.log_path / "stdout.log", "wb") as out:
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=out,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=spec.path,
                )
            except OSError as e:
                raise LaunchFailed(f"Cannot launch {cmd[0]} for {spec.addr}: {e}") from e

        handle = NodeHandle(spec, process=process, client_factory=self._client_factory)
        try:
            await self.wait_ready(handle)
        except BaseException:
            # nobody owns the handle yet, so nothing else would stop the process
            await self._stop_process(handle)
            await handle.close()
            raise
        return handle

    async def attach(self, spec: NodeSpec) -> NodeHandle:
        handle = NodeHandle(spec, client_factory=self._client_factory)
        try:
            await self.wait_ready(handle)
        except BaseException:
            await handle.close()
            raise
        return handle

    async def db_path(self, handle: NodeHandle) -> str:
        """The node's data directory: ours when we launched it, its `dir` setting otherwise."""
        if handle.process is not None:
            return str(handle.spec.db_path)
        try:
            reply = await handle.client.config_get("dir")
        except ResponseError as e:
            raise ProtocolError(f"{handle.addr} CONFIG GET dir failed: {e}") from e
        if not reply.get("dir"):
            raise ProtocolError(f"{handle.addr} did not report its data directory")
        return reply["dir"]

    async def wait_ready(self, handle: NodeHandle, timeout: Optional[float] = None) -> None:
        """Wait for the node to accept connections and answer PING."""
        timeout = self.config.ready_timeout if timeout is None else timeout
        console.print(f"[yellow]Waiting for {handle.addr} to start...[/yellow]")

        deadline = time.monotonic() + timeout
        last_error: Optional[Exception] = None
        while time.monotonic() < deadline:
            process = handle.process
            if process is not None and process.returncode is not None:
                output = _tail(handle.spec.log_path / "stdout.log")
                raise LaunchFailed(
                    f"Node {handle.addr} exited with code {process.returncode}\nOutput:\n{output}"
                )
            try:
                if await handle.client.ping():
                    console.print(f"[green]{handle.addr} is ready![/green]")
                    return
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                last_error = e
            except ResponseError as e:
                # e.g. LOADING while the dataset is read back in
                last_error = e
            await asyncio.sleep(READY_POLL_INTERVAL)

        raise ReadinessTimeout(
            f"Node {handle.addr} failed to become ready within {timeout} seconds (last error: {last_error})"
        )

    async def reconfigure(self, handle: NodeHandle, key: str, value) -> None:
        """Apply a live CONFIG SET; the process is not restarted."""
        try:
            accepted = await handle.client.config_set(key, value)
        except ResponseError as e:
            raise ConfigRejected(f"{handle.addr} rejected CONFIG SET {key} {value}: {e}") from e
        if not accepted:
            raise ConfigRejected(f"{handle.addr} did not accept CONFIG SET {key} {value}")
        logger.info("CONFIG SET %s %s on %s", key, value, handle.addr)

    async def bind_replica(self, leader: NodeHandle, follower: NodeHandle) -> None:
        """Make follower replicate from leader; a no-op if it already does."""
        if await current_leader(follower) == (leader.host, leader.port):
            logger.info("%s already replicates from %s", follower.addr, leader.addr)
            return
        try:
            await follower.client.slaveof(leader.host, leader.port)
        except ResponseError as e:
            raise ProtocolError(f"{follower.addr} SLAVEOF {leader.addr} failed: {e}") from e
        logger.info("%s now replicates from %s", follower.addr, leader.addr)

    async def teardown(self, handle: NodeHandle, keep_alive: Optional[bool] = None,
                       keep_data: Optional[bool] = None) -> None:
        """Release a node exactly once: stop it unless kept alive, then purge its directory."""
        if handle.released:
            return
        handle.released = True
        keep_alive = self.config.keep_alive if keep_alive is None else keep_alive
        keep_data = self.config.keep_data if keep_data is None else keep_data

        try:
            if not keep_alive:
                if handle.process is not None:
                    await self._stop_process(handle)
                else:
                    await self._shutdown_attached(handle)
        finally:
            await handle.close()

        # never pull the directory out from under a live process
        if not keep_alive and not keep_data and handle.spec.path.exists():
            shutil.rmtree(handle.spec.path, ignore_errors=True)
            logger.info("Removed %s", handle.spec.path)

    async def _stop_process(self, handle: NodeHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        console.print(f"[red]Stopping node {handle.addr}...[/red]")
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
        except asyncio.TimeoutError:
            console.print(f"[red]Force killing node {handle.addr}...[/red]")
            process.kill()
            await process.wait()

    async def _shutdown_attached(self, handle: NodeHandle) -> None:
        console.print(f"[red]Shutting down node {handle.addr}...[/red]")
        # the handle is already marked released, so go around connect()
        client = handle._client or handle._open()
        try:
            await client.execute_command("SHUTDOWN")
        except (RedisConnectionError, RedisTimeoutError):
            # the node drops the connection as it exits
            logger.debug("%s closed the connection on SHUTDOWN", handle.addr)
        except ResponseError as e:
            raise ProtocolError(f"{handle.addr} SHUTDOWN failed: {e}") from e
        finally:
            if client is not handle._client:
                await client.aclose()

    @asynccontextmanager
    async def scoped(self, spec: NodeSpec, keep_alive: Optional[bool] = None,
                     keep_data: Optional[bool] = None) -> AsyncIterator[NodeHandle]:
        """Open a node and guarantee its teardown on every exit path."""
        handle = await self.open(spec)
        try:
            yield handle
        finally:
            await self.teardown(handle, keep_alive, keep_data)
