"""
Dataset comparison between two nodes.

The comparator walks the union of both keyspaces (or a caller-supplied key
set), fetches type, remaining TTL and value for every key from both sides in
pipelined batches, and reports every divergence rather than stopping at the
first one.

In EXPIRY_TOLERANT mode a key present on only one side, or volatile on only
one side, is accepted once its nominal TTL has run out (within
expiry_grace): independent nodes do not fire their expiry timers at the same
instant, and a node configured with noexpire keeps such keys until expiry is
re-enabled.
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from redis.exceptions import RedisError

from .config import CompareConfig
from .errors import DivergenceError, ProtocolError
from .node import NodeHandle
from .traffic import WriteLedger

logger = logging.getLogger(__name__)


class ToleranceMode(enum.Enum):
    STRICT = "strict"
    EXPIRY_TOLERANT = "expiry-tolerant"


class Cause(enum.Enum):
    MISSING = "missing"          # on the left only
    UNEXPECTED = "unexpected"    # on the right only
    TYPE = "type"
    VALUE = "value"
    TTL = "ttl"                  # volatile on one side, persistent on the other


@dataclass(frozen=True)
class KeyState:
    type: str
    value: Any
    pttl: int

    @property
    def volatile(self) -> bool:
        return self.pttl >= 0


@dataclass(frozen=True)
class Divergence:
    key: str
    cause: Cause
    left: Optional[KeyState]
    right: Optional[KeyState]

    def describe(self) -> str:
        return f"{self.key}: {self.cause.value} (left={self.left}, right={self.right})"


@dataclass(frozen=True)
class ComparisonResult:
    left: str
    right: str
    mode: ToleranceMode
    keys_checked: int
    divergences: Tuple[Divergence, ...] = ()
    tolerated: Tuple[str, ...] = ()

    @property
    def equal(self) -> bool:
        return not self.divergences

    def keys(self, cause: Optional[Cause] = None) -> List[str]:
        return [d.key for d in self.divergences if cause is None or d.cause is cause]

    def summary(self) -> str:
        return (f"{self.left} vs {self.right} ({self.mode.value}): {self.keys_checked} keys, "
                f"{len(self.divergences)} divergent, {len(self.tolerated)} tolerated")

    def report(self) -> str:
        return "\n".join([self.summary()] + [d.describe() for d in self.divergences])

    def raise_for_divergence(self) -> None:
        if self.divergences:
            raise DivergenceError(self.report(), result=self)


READERS = {
    "string": lambda pipe, key: pipe.get(key),
    "list": lambda pipe, key: pipe.lrange(key, 0, -1),
    "set": lambda pipe, key: pipe.smembers(key),
    "hash": lambda pipe, key: pipe.hgetall(key),
    "zset": lambda pipe, key: pipe.zrange(key, 0, -1, withscores=True),
}

# lists and sorted sets keep their order; sets and hashes do not
NORMALIZERS = {
    "string": lambda raw: raw,
    "list": lambda raw: tuple(raw),
    "set": lambda raw: frozenset(raw),
    "hash": lambda raw: tuple(sorted(raw.items())),
    "zset": lambda raw: tuple((member, float(score)) for member, score in raw),
}


async def fetch_states(client, keys: Sequence[str]) -> Dict[str, Optional[KeyState]]:
    """Type, PTTL and normalized value of each key; None for absent keys."""
    states: Dict[str, Optional[KeyState]] = {key: None for key in keys}
    if not keys:
        return states

    pipe = client.pipeline(transaction=False)
    for key in keys:
        pipe.type(key)
        pipe.pttl(key)
    meta = await pipe.execute()

    present = []
    pipe = client.pipeline(transaction=False)
    for key, key_type, pttl in zip(keys, meta[0::2], meta[1::2]):
        if key_type == "none":
            continue
        if key_type not in READERS:
            raise ProtocolError(f"Cannot compare key {key} of type {key_type}")
        READERS[key_type](pipe, key)
        present.append((key, key_type, int(pttl)))
    if not present:
        return states

    for (key, key_type, pttl), raw in zip(present, await pipe.execute()):
        # expired between TYPE and the read
        if raw is None or (key_type != "string" and len(raw) == 0):
            continue
        states[key] = KeyState(key_type, NORMALIZERS[key_type](raw), pttl)
    return states


class Comparator:
    def __init__(self, config: Optional[CompareConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or CompareConfig()
        self._clock = clock

    async def _scan(self, client) -> List[str]:
        return [key async for key in client.scan_iter(count=self.config.scan_count)]

    def _expiry_due(self, key: str, present: KeyState, ledger: Optional[WriteLedger],
                    now: float) -> bool:
        if ledger is not None and key in ledger:
            return ledger.due(key, self.config.expiry_grace, now)
        return present.volatile and present.pttl <= self.config.expiry_grace * 1000

    def judge(self, key: str, left: Optional[KeyState], right: Optional[KeyState],
              mode: ToleranceMode, ledger: Optional[WriteLedger] = None,
              now: Optional[float] = None) -> Tuple[Optional[Divergence], bool]:
        """Classify one key: (divergence or None, tolerated)."""
        now = self._clock() if now is None else now
        tolerant = mode is ToleranceMode.EXPIRY_TOLERANT

        if left is None and right is None:
            return None, False
        if left is None or right is None:
            present = left if left is not None else right
            if tolerant and self._expiry_due(key, present, ledger, now):
                return None, True
            cause = Cause.MISSING if right is None else Cause.UNEXPECTED
            return Divergence(key, cause, left, right), False
        if left.type != right.type:
            return Divergence(key, Cause.TYPE, left, right), False
        if left.value != right.value:
            return Divergence(key, Cause.VALUE, left, right), False
        if self.config.check_ttl and left.volatile != right.volatile:
            volatile = left if left.volatile else right
            if tolerant and self._expiry_due(key, volatile, ledger, now):
                return None, True
            return Divergence(key, Cause.TTL, left, right), False
        return None, False

    async def compare(self, a: NodeHandle, b: NodeHandle,
                      mode: ToleranceMode = ToleranceMode.STRICT, *,
                      keys: Optional[Iterable[str]] = None,
                      ledger: Optional[WriteLedger] = None,
                      db: int = 0) -> ComparisonResult:
        """
        Compare the dataset of a against b.

        Args:
            a, b: the two nodes
            mode: STRICT or EXPIRY_TOLERANT
            keys: compare only these keys instead of scanning both keyspaces
            ledger: expiry deadlines of volatile keys; without one, the
                remaining PTTL on the side that still has the key is used
            db: logical database

        Returns:
            The complete ComparisonResult
        """
        client_a = a.connect(db=db)
        client_b = b.connect(db=db)
        divergences: List[Divergence] = []
        tolerated: List[str] = []
        try:
            try:
                if keys is None:
                    candidates = sorted(set(await self._scan(client_a)) | set(await self._scan(client_b)))
                else:
                    candidates = list(dict.fromkeys(keys))
                logger.info("Comparing %d keys between %s and %s (%s)",
                            len(candidates), a.addr, b.addr, mode.value)

                for i in range(0, len(candidates), self.config.batch_size):
                    chunk = candidates[i:i + self.config.batch_size]
                    left = await fetch_states(client_a, chunk)
                    right = await fetch_states(client_b, chunk)
                    now = self._clock()
                    for key in chunk:
                        divergence, ok = self.judge(key, left[key], right[key], mode, ledger, now)
                        if divergence is not None:
                            divergences.append(divergence)
                        elif ok:
                            tolerated.append(key)
            except RedisError as e:
                raise ProtocolError(f"Comparing {a.addr} with {b.addr} failed: {e}") from e
        finally:
            await client_a.aclose()
            await client_b.aclose()

        result = ComparisonResult(
            left=a.addr,
            right=b.addr,
            mode=mode,
            keys_checked=len(candidates),
            divergences=tuple(divergences),
            tolerated=tuple(tolerated),
        )
        if result.equal:
            logger.info(result.summary())
        else:
            logger.error(result.report())
        return result
