"""
Write traffic against a node.

Keys are derived deterministically from a prefix and an index so that later
phases (and the comparator) know exactly which keys were written. Every
write failure is fatal: traffic generation assumes a healthy node.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from redis.exceptions import RedisError

from .errors import ProtocolError
from .node import NodeHandle
from .progress import binlog_pos

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
MIXED_KINDS = ("string", "list", "set", "hash", "zset")
MIXED_WIDTH = 3

# completion future -> the task writing behind it, until the task finishes
_writers: Dict[asyncio.Future, asyncio.Task] = {}


@dataclass(frozen=True)
class KeySpace:
    """The keys prefix_<start> .. prefix_<start + count - 1>."""

    prefix: str
    start: int = 0
    count: int = 0

    def key(self, index: int) -> str:
        return f"{self.prefix}_{index}"

    def value(self, index: int) -> str:
        return f"{self.prefix}_value_{index}"

    def indexes(self) -> range:
        return range(self.start, self.start + self.count)

    def keys(self) -> Iterator[str]:
        return (self.key(i) for i in self.indexes())

    def __len__(self) -> int:
        return self.count

    def following(self, count: int) -> "KeySpace":
        """The next disjoint range under the same prefix."""
        return KeySpace(self.prefix, self.start + self.count, count)

    def overlaps(self, other: "KeySpace") -> bool:
        if self.prefix != other.prefix:
            return False
        return self.start < other.start + other.count and other.start < self.start + self.count


class WriteLedger:
    """Nominal expiry deadline of every key written with a TTL."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._deadlines: Dict[str, float] = {}

    def record(self, key: str, ttl: float) -> None:
        self._deadlines[key] = self._clock() + ttl

    def deadline(self, key: str) -> Optional[float]:
        return self._deadlines.get(key)

    def due(self, key: str, grace: float = 0.0, now: Optional[float] = None) -> bool:
        """True when key's TTL has run out, allowing `grace` seconds of early expiry."""
        deadline = self._deadlines.get(key)
        if deadline is None:
            return False
        now = self._clock() if now is None else now
        return now + grace >= deadline

    def expired(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        return [key for key, deadline in self._deadlines.items() if deadline <= now]

    def latest_deadline(self) -> Optional[float]:
        return max(self._deadlines.values(), default=None)

    def __contains__(self, key: str) -> bool:
        return key in self._deadlines

    def __len__(self) -> int:
        return len(self._deadlines)


WRITERS = {
    "set": lambda pipe, key, value, index: pipe.set(key, value),
    "lpush": lambda pipe, key, value, index: pipe.lpush(key, value),
    "sadd": lambda pipe, key, value, index: pipe.sadd(key, value),
    "hset": lambda pipe, key, value, index: pipe.hset(key, "field", value),
    "zadd": lambda pipe, key, value, index: pipe.zadd(key, {value: index}),
}


async def _execute(pipe, handle: NodeHandle, what: str):
    try:
        return await pipe.execute()
    except RedisError as e:
        raise ProtocolError(f"Write to {handle.addr} failed ({what}): {e}") from e


async def populate(handle: NodeHandle, auth: Optional[str], count: int, start: int = 0,
                   prefix: str = "key", *, optype: str = "set",
                   batch_size: int = DEFAULT_BATCH_SIZE, ttl: Optional[int] = None,
                   ledger: Optional[WriteLedger] = None, db: int = 0) -> KeySpace:
    """
    Write `count` keys prefix_<start>.. over a private connection.

    Args:
        handle: node to write to
        auth: password for the connection (None uses the node's own)
        count: number of keys
        start: first index; disjoint [start, start + count) ranges never collide
        prefix: key prefix
        optype: one of WRITERS
        batch_size: commands per pipeline round trip
        ttl: optional expiry in seconds for every key, recorded in `ledger`
        ledger: where volatile keys are recorded
        db: logical database

    Returns:
        The KeySpace that was written

    Raises:
        ProtocolError: on the first failed write
    """
    if optype not in WRITERS:
        raise ValueError(f"Unknown optype {optype!r}, expected one of {sorted(WRITERS)}")
    space = KeySpace(prefix, start, count)
    write = WRITERS[optype]
    logger.info("Writing %d %s keys %s_[%d..%d) to %s", count, optype, prefix, start,
                start + count, handle.addr)

    client = handle.connect(password=auth, db=db)
    try:
        for chunk_start in range(space.start, space.start + count, batch_size):
            chunk = range(chunk_start, min(chunk_start + batch_size, space.start + count))
            pipe = client.pipeline(transaction=False)
            for index in chunk:
                key = space.key(index)
                write(pipe, key, space.value(index), index)
                if ttl:
                    pipe.expire(key, ttl)
            await _execute(pipe, handle, f"{optype} {space.key(chunk.start)}..{space.key(chunk.stop - 1)}")
            if ttl and ledger is not None:
                for index in chunk:
                    ledger.record(space.key(index), ttl)
    finally:
        await client.aclose()

    logger.info("Wrote %d keys with prefix %s to %s", count, prefix, handle.addr)
    return space


async def _publish(coro, done: asyncio.Future) -> None:
    try:
        result = await coro
    except asyncio.CancelledError:
        if not done.done():
            done.cancel()
        raise
    except Exception as e:
        if not done.done():
            done.set_exception(e)
    else:
        if not done.done():
            done.set_result(result)


def populate_async(handle: NodeHandle, auth: Optional[str], count: int, start: int = 0,
                   prefix: str = "key", done: Optional[asyncio.Future] = None,
                   **options) -> asyncio.Future:
    """
    Run populate() as its own task.

    Completion (the written KeySpace, or the failure) is published on `done`
    exactly once. Callers must await `done` before trusting any barrier that
    ran alongside the writes.
    """
    loop = asyncio.get_running_loop()
    if done is None:
        done = loop.create_future()
    task = loop.create_task(
        _publish(populate(handle, auth, count, start, prefix, **options), done)
    )
    _writers[done] = task
    task.add_done_callback(lambda _: _writers.pop(done, None))
    return done


async def cancel_populate(done: asyncio.Future) -> None:
    """Stop the writer publishing on `done` and wait until it has let go of its connection."""
    if not done.done():
        done.cancel()
    task = _writers.get(done)
    if task is not None:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


async def add_one_key_every_store(handle: NodeHandle, auth: Optional[str], store_count: int,
                                  prefix: str = "onekey", limit: Optional[int] = None) -> List[str]:
    """
    Write onekey_0, onekey_1, ... until every store's binlog has advanced.

    The key sequence is fixed, so two nodes with the same store layout receive
    the same keys.
    """
    before = {}
    for store in range(store_count):
        before[store] = (await binlog_pos(handle, store)).value
    pending = set(range(store_count))
    limit = limit if limit is not None else store_count * 1000
    written: List[str] = []

    client = handle.connect(password=auth)
    try:
        while pending:
            if len(written) >= limit:
                raise ProtocolError(
                    f"Stores {sorted(pending)} on {handle.addr} did not advance after {limit} writes"
                )
            key = f"{prefix}_{len(written)}"
            try:
                await client.set(key, key)
            except RedisError as e:
                raise ProtocolError(f"Write {key} to {handle.addr} failed: {e}") from e
            written.append(key)
            for store in sorted(pending):
                if (await binlog_pos(handle, store)).value > before[store]:
                    pending.discard(store)
    finally:
        await client.aclose()

    logger.info("Touched all %d stores on %s with %d keys", store_count, handle.addr, len(written))
    return written


def _queue_mixed(pipe, kind: str, key: str, index: int) -> None:
    members = [f"{index}_{j}" for j in range(MIXED_WIDTH)]
    if kind == "string":
        pipe.set(key, f"v{index}")
    elif kind == "list":
        pipe.rpush(key, *members)
    elif kind == "set":
        pipe.sadd(key, *members)
    elif kind == "hash":
        pipe.hset(key, mapping={f"f{j}": member for j, member in enumerate(members)})
    else:
        pipe.zadd(key, {member: j for j, member in enumerate(members)})


async def add_mixed_data(handle: NodeHandle, auth: Optional[str], prefix: str, count: int, *,
                         start: int = 0, ttl: Optional[int] = None, ttl_every: int = 0,
                         ledger: Optional[WriteLedger] = None,
                         batch_size: int = DEFAULT_BATCH_SIZE) -> List[str]:
    """Write strings, lists, sets, hashes and sorted sets; every ttl_every-th key is volatile."""
    keys: List[str] = []
    volatile: List[str] = []
    client = handle.connect(password=auth)
    try:
        for chunk_start in range(start, start + count, batch_size):
            pipe = client.pipeline(transaction=False)
            batch_volatile = []
            for index in range(chunk_start, min(chunk_start + batch_size, start + count)):
                kind = MIXED_KINDS[index % len(MIXED_KINDS)]
                key = f"{prefix}_{kind}_{index}"
                _queue_mixed(pipe, kind, key, index)
                if ttl and ttl_every and index % ttl_every == 0:
                    pipe.expire(key, ttl)
                    batch_volatile.append(key)
                keys.append(key)
            await _execute(pipe, handle, f"mixed data {prefix} from {chunk_start}")
            if ledger is not None:
                for key in batch_volatile:
                    ledger.record(key, ttl)
            volatile.extend(batch_volatile)
    finally:
        await client.aclose()

    logger.info("Wrote %d mixed keys (%d volatile) with prefix %s to %s",
                len(keys), len(volatile), prefix, handle.addr)
    return keys


async def fill_list(handle: NodeHandle, auth: Optional[str], key: str, length: int,
                    element: str, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
    """LPUSH `length` copies of element onto key."""
    logger.info("lpush %d elements to %s on %s", length, key, handle.addr)
    client = handle.connect(password=auth)
    try:
        for chunk_start in range(0, length, batch_size):
            pipe = client.pipeline(transaction=False)
            pipe.lpush(key, *([element] * min(batch_size, length - chunk_start)))
            await _execute(pipe, handle, f"lpush {key} at {chunk_start}")
    finally:
        await client.aclose()
