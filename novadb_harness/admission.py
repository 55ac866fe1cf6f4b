"""
Admission probe for client output-buffer limits.

A large LRANGE reply pushes a connection's pending output over the
configured soft and/or hard threshold. The node must close the connection
immediately on a hard breach, and on a soft breach only once the breach has
lasted soft_seconds. A normal command in between resets the soft-limit timer.

Probe connections are single-connection clients with retries disabled, so a
server-side close surfaces as a connection error instead of a silent
reconnect.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from .config import LimitConfig
from .errors import AdmissionError, ProtocolError
from .node import NodeHandle

logger = logging.getLogger(__name__)

HARD_MB = "client-output-buffer-limit-normal-hard-mb"
SOFT_MB = "client-output-buffer-limit-normal-soft-mb"
SOFT_SECONDS = "client-output-buffer-limit-normal-soft-second"


@dataclass(frozen=True)
class OutputBufferLimits:
    hard_mb: int
    soft_mb: int
    soft_seconds: int

    @property
    def hard_enforced(self) -> bool:
        return self.hard_mb != 0

    @property
    def soft_enforced(self) -> bool:
        return self.soft_mb != 0 and self.soft_seconds != 0

    def settings(self) -> Dict[str, str]:
        return {
            HARD_MB: str(self.hard_mb),
            SOFT_MB: str(self.soft_mb),
            SOFT_SECONDS: str(self.soft_seconds),
        }

    def __str__(self) -> str:
        return f"hard={self.hard_mb}mb soft={self.soft_mb}mb/{self.soft_seconds}s"


# every combination of hard on/off, soft on/off and soft timer on/off
LIMIT_MATRIX: List[OutputBufferLimits] = [
    OutputBufferLimits(2, 1, 15),
    OutputBufferLimits(0, 1, 15),
    OutputBufferLimits(2, 0, 15),
    OutputBufferLimits(0, 0, 15),
    OutputBufferLimits(2, 1, 0),
    OutputBufferLimits(0, 1, 0),
    OutputBufferLimits(2, 0, 0),
    OutputBufferLimits(0, 0, 0),
]


class AdmissionProbe:
    def __init__(self, handle: NodeHandle, auth: Optional[str], config: LimitConfig,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.handle = handle
        self.auth = auth
        self.config = config
        self._sleep = sleep

    def _connect(self):
        return self.handle.connect(
            password=self.auth,
            single_connection_client=True,
            socket_timeout=self.config.client_timeout,
            retry=Retry(NoBackoff(), 0),
        )

    async def _survives_read(self, client, end: int) -> bool:
        """LRANGE 0..end; False if the node closed the connection."""
        try:
            await client.lrange(self.config.list_key, 0, end)
        except RedisConnectionError as e:
            logger.debug("%s closed the probe connection: %s", self.handle.addr, e)
            return False
        except RedisError as e:
            raise ProtocolError(f"lrange {self.config.list_key} on {self.handle.addr} failed: {e}") from e
        return True

    async def check_soft_limit(self, limits: OutputBufferLimits) -> None:
        client = self._connect()
        try:
            for attempt in ("first", "second"):
                if not await self._survives_read(client, self.config.soft_range_end):
                    raise AdmissionError(
                        f"Connection closed on the {attempt} soft breach before the timer ran out ({limits})"
                    )
            await self._sleep(self.config.soft_wait)
            survived = await self._survives_read(client, self.config.soft_range_end)
        finally:
            await client.aclose()

        if limits.soft_enforced and survived:
            raise AdmissionError(f"Soft limit not enforced ({limits})")
        if not limits.soft_enforced and not survived:
            raise AdmissionError(f"Connection closed although the soft limit is off ({limits})")

    async def check_hard_limit(self, limits: OutputBufferLimits) -> None:
        client = self._connect()
        try:
            survived = await self._survives_read(client, self.config.hard_range_end)
        finally:
            await client.aclose()

        if limits.hard_enforced and survived:
            raise AdmissionError(f"Hard limit not enforced ({limits})")
        if not limits.hard_enforced and not survived:
            raise AdmissionError(f"Connection closed although the hard limit is off ({limits})")

    async def check_soft_reset(self, limits: OutputBufferLimits) -> None:
        """A normal command after a soft breach must restart the soft-limit clock."""
        client = self._connect()
        try:
            if not await self._survives_read(client, self.config.soft_range_end):
                raise AdmissionError(f"Connection closed on the first soft breach ({limits})")
            try:
                await client.llen(self.config.list_key)
            except RedisError as e:
                raise AdmissionError(f"llen after a soft breach failed ({limits}): {e}") from e
            await self._sleep(self.config.soft_wait)
            if not await self._survives_read(client, self.config.soft_range_end):
                raise AdmissionError(f"Reset of the soft limit failed ({limits})")
        finally:
            await client.aclose()

    async def run(self, limits: OutputBufferLimits) -> None:
        logger.info("current limit %s, start", limits)
        await self.check_soft_limit(limits)
        await self.check_hard_limit(limits)
        await self.check_soft_reset(limits)
        logger.info("current limit %s, end", limits)
