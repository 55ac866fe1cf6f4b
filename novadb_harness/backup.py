"""Backup, restore and binlog administrative commands."""

import logging
import shutil
from pathlib import Path
from typing import Union

from redis.exceptions import ResponseError

from .errors import ProtocolError, WorkspaceError
from .node import NodeHandle

logger = logging.getLogger(__name__)

BACKUP_MODES = ("copy", "ckpt")

PathLike = Union[str, Path]


def prepare_backup_dir(directory: PathLike) -> Path:
    """Start from an empty backup directory."""
    directory = Path(directory)
    try:
        if directory.exists():
            shutil.rmtree(directory)
        directory.mkdir(parents=True)
    except OSError as e:
        raise WorkspaceError(f"Cannot prepare backup directory {directory}: {e}") from e
    return directory


async def backup(handle: NodeHandle, directory: PathLike, mode: str) -> None:
    if mode not in BACKUP_MODES:
        raise ValueError(f"Unknown backup mode {mode!r}, expected one of {BACKUP_MODES}")
    await handle.execute("BACKUP", str(directory), mode)
    logger.info("Backed up %s to %s (%s)", handle.addr, directory, mode)


async def expect_backup_rejected(handle: NodeHandle, directory: PathLike, mode: str,
                                 *fragments: str) -> str:
    """
    Issue a BACKUP that must fail with an error mentioning one of fragments.

    Returns:
        The node's error message
    """
    try:
        await handle.client.execute_command("BACKUP", str(directory), mode)
    except ResponseError as e:
        message = str(e)
        if any(fragment in message for fragment in fragments):
            logger.info("BACKUP %s rejected as expected: %s", directory, message)
            return message
        raise ProtocolError(f"BACKUP {directory} on {handle.addr} failed with unexpected error: {message}") from e
    raise ProtocolError(f"BACKUP {directory} on {handle.addr} succeeded but should have been rejected")


async def restore_backup(handle: NodeHandle, directory: PathLike) -> None:
    await handle.execute("RESTOREBACKUP", "all", str(directory), "force")
    logger.info("Restored %s from %s", handle.addr, directory)


async def flush_binlog(handle: NodeHandle) -> None:
    await handle.execute("BINLOGFLUSH", "all")
