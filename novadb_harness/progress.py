"""
Per-store progress markers read from a node's administrative interface.

- BINLOGPOS <store>: highest binlog sequence applied on that store
- INFO replication, entries rocksdb<i>_master: per-store sync state on a
  follower; state=online once the initial full sync is done
- INFO binloginfo, entries rocksdb<i>: remain=<n> binlog entries not yet
  dumped to file

The harness only reads these; they are advanced by the node process.
"""

import re
from dataclasses import dataclass
from typing import Dict, Mapping

from .errors import ProtocolError
from .node import NodeHandle

SYNC_DONE_STATE = "online"
_SYNC_ENTRY = re.compile(r"^rocksdb(\d+)_master$")
_BINLOG_ENTRY = re.compile(r"^rocksdb(\d+)$")


@dataclass(frozen=True)
class ProgressMarker:
    store: int
    value: int


async def binlog_pos(handle: NodeHandle, store: int) -> ProgressMarker:
    reply = await handle.execute("BINLOGPOS", store)
    try:
        return ProgressMarker(store, int(reply))
    except (TypeError, ValueError):
        raise ProtocolError(f"{handle.addr} BINLOGPOS {store} returned {reply!r}") from None


async def binlog_positions(handle: NodeHandle, store_count: int) -> Dict[int, int]:
    positions = {}
    for store in range(store_count):
        marker = await binlog_pos(handle, store)
        positions[store] = marker.value
    return positions


def _per_store(info: Mapping, pattern: "re.Pattern") -> Dict[int, Mapping]:
    entries = {}
    for name, value in info.items():
        match = pattern.match(name)
        if match and isinstance(value, Mapping):
            entries[int(match.group(1))] = value
    return entries


async def sync_states(handle: NodeHandle) -> Dict[int, str]:
    """Per-store replication state as reported by a follower."""
    info = await handle.info("replication")
    return {store: str(entry.get("state", "")) for store, entry in _per_store(info, _SYNC_ENTRY).items()}


async def pending_binlog(handle: NodeHandle) -> Dict[int, int]:
    """Per-store count of binlog entries not yet dumped."""
    info = await handle.info("binloginfo")
    pending = {}
    for store, entry in _per_store(info, _BINLOG_ENTRY).items():
        try:
            pending[store] = int(entry.get("remain", 0))
        except (TypeError, ValueError):
            raise ProtocolError(f"{handle.addr} binloginfo rocksdb{store} has bad remain: {entry!r}") from None
    return pending
