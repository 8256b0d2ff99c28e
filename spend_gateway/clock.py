"""Current-time sources for window and cycle checks.

The engine never schedules anything; it reads "now" once per attempt from a
:class:`Clock`. Times are integer unix seconds, matching permission fields.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional

import ntplib


logger = logging.getLogger("spend_gateway")


class Clock:
    """Source of the current unix time in whole seconds."""

    def now(self) -> int:
        raise NotImplementedError


class LocalClock(Clock):
    """Local system time (not secure against clock skew)."""

    def now(self) -> int:
        return int(time.time())


class NTPClock(Clock):
    """
    NTP-verified time source.

    The offset between NTP and the local clock is refreshed at most every
    ``refresh_seconds``; between refreshes the local clock plus the cached
    offset is used. If every server is unreachable the local clock is used
    and a warning is logged.
    """

    def __init__(
        self,
        ntp_servers: Optional[List[str]] = None,
        refresh_seconds: float = 300.0,
        timeout_seconds: float = 2.0,
    ):
        self.ntp_servers = ntp_servers or ["pool.ntp.org", "time.google.com"]
        self.refresh_seconds = float(refresh_seconds)
        self.timeout_seconds = float(timeout_seconds)
        self._client = ntplib.NTPClient()
        self._offset: Optional[float] = None
        self._refreshed_at: float = 0.0

    def _refresh(self) -> None:
        for server in self.ntp_servers:
            try:
                response = self._client.request(server, version=3, timeout=self.timeout_seconds)
            except (ntplib.NTPException, OSError) as e:
                logger.debug("NTP server %s unavailable: %s", server, e)
                continue
            self._offset = float(response.offset)
            self._refreshed_at = time.monotonic()
            return
        logger.warning("All NTP servers unreachable, using local time")
        self._offset = None
        self._refreshed_at = time.monotonic()

    def now(self) -> int:
        if self._refreshed_at == 0.0 or time.monotonic() - self._refreshed_at >= self.refresh_seconds:
            self._refresh()
        return int(time.time() + (self._offset or 0.0))


class FixedClock(Clock):
    """Manually advanced clock for tests and simulations."""

    def __init__(self, now: int = 0):
        self._now = int(now)

    def now(self) -> int:
        return self._now

    def set(self, now: int) -> None:
        self._now = int(now)

    def advance(self, seconds: int) -> None:
        self._now += int(seconds)
