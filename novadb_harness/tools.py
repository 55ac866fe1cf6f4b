"""
External utilities the scenarios shell out to.

Their output is captured and logged; only the exit status drives control
flow.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import ToolFailed
from .node import NodeHandle

logger = logging.getLogger(__name__)

MAX_BINLOG_ID = 2 ** 64 - 1
DEFAULT_TOOL_TIMEOUT = 600.0


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


async def run_tool(argv: Sequence[str], timeout: float = DEFAULT_TOOL_TIMEOUT) -> str:
    """Run argv to completion, log its output and return stdout."""
    argv = [str(a) for a in argv]
    logger.info("Running %s", " ".join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ToolFailed(argv, -1, str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        raise ToolFailed(argv, -1, f"timed out after {timeout}s") from None
    except BaseException:
        logger.warning("Stopping %s (pid %d) early", argv[0], process.pid)
        await _kill(process)
        raise

    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    if out:
        logger.info("%s stdout:\n%s", argv[0], out.rstrip())
    if err:
        logger.info("%s stderr:\n%s", argv[0], err.rstrip())
    if process.returncode != 0:
        raise ToolFailed(argv, process.returncode, err or out)
    return out


async def restore_binlog(tool: str, leader: NodeHandle, follower: NodeHandle, store_count: int,
                         end: int = MAX_BINLOG_ID, password: Optional[str] = None,
                         timeout: float = DEFAULT_TOOL_TIMEOUT) -> None:
    """Replay the leader's binlog onto the follower, store by store, up to `end`."""
    for store in range(store_count):
        argv = [tool, "--src", leader.addr, "--dst", follower.addr,
                "--store", str(store), "--end", str(end)]
        if password:
            argv += ["--password", password]
        await run_tool(argv, timeout)


@dataclass(frozen=True)
class SyncWindow:
    """Store range and binlog window handed to the distributed-sync utility."""

    store_id: int = 0
    store_count: int = 1
    window: int = 8000
    begin: int = 0
    end: int = 0

    def args(self) -> List[str]:
        return [str(self.store_id), str(self.store_count), str(self.window),
                str(self.begin), str(self.end)]


async def run_dts(tool: str, source: NodeHandle, target: NodeHandle,
                  window: SyncWindow = SyncWindow(), timeout: float = DEFAULT_TOOL_TIMEOUT) -> str:
    argv = [tool, source.addr, source.password or "", target.addr, target.password or ""]
    return await run_tool(argv + window.args(), timeout)
