from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock

from clarityflow.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _Window:
  reset_at: datetime
  count: int


@dataclass(frozen=True)
class RateLimitInfo:
  limit: int
  remaining: int
  reset_time: datetime | None
  blocked: bool

  def retry_after(self, now: datetime) -> int:
    if self.reset_time is None:
      return 0
    return max(1, int((self.reset_time - now).total_seconds()))


class RateLimiter:
  """
  In-memory fixed-window rate limiter keyed by credential.

  Notes:
  - A window opens on the first request (count=1) and is replaced, not
    incremented, once now >= reset_at.
  - Bursts near window boundaries are permitted.
  - Expired windows are dropped by sweep(), run by start_sweeper() on its own task.
  """

  def __init__(self, *, clock: Clock = utcnow, window_seconds: int = 3600, sweep_seconds: int = 3600) -> None:
    self._clock = clock
    self._window = timedelta(seconds=int(window_seconds))
    self._sweep_seconds = max(1, int(sweep_seconds))
    self._lock = Lock()
    self._windows: dict[str, _Window] = {}
    self._sweeper: asyncio.Task | None = None

  def check(self, credential: str, limit: int) -> RateLimitInfo:
    now = self._clock()
    with self._lock:
      w = self._windows.get(credential)
      if w is None or now >= w.reset_at:
        w = _Window(reset_at=now + self._window, count=1)
        self._windows[credential] = w
        return RateLimitInfo(limit=limit, remaining=max(0, limit - 1), reset_time=w.reset_at, blocked=False)
      w.count += 1
      return RateLimitInfo(
        limit=limit,
        remaining=max(0, limit - w.count),
        reset_time=w.reset_at,
        blocked=w.count > limit,
      )

  def status(self, credential: str, limit: int) -> RateLimitInfo:
    """Peek at a credential's window without counting a request."""
    now = self._clock()
    with self._lock:
      w = self._windows.get(credential)
      if w is None or now >= w.reset_at:
        return RateLimitInfo(limit=limit, remaining=limit, reset_time=None, blocked=False)
      return RateLimitInfo(
        limit=limit,
        remaining=max(0, limit - w.count),
        reset_time=w.reset_at,
        blocked=w.count > limit,
      )

  def reset(self, credential: str) -> bool:
    with self._lock:
      return self._windows.pop(credential, None) is not None

  def reset_prefix(self, prefix: str) -> int:
    with self._lock:
      doomed = [k for k in self._windows if k.startswith(prefix)]
      for k in doomed:
        del self._windows[k]
      return len(doomed)

  def sweep(self) -> int:
    now = self._clock()
    with self._lock:
      expired = [k for k, w in self._windows.items() if now >= w.reset_at]
      for k in expired:
        del self._windows[k]
    if expired:
      logger.debug("Rate limiter sweep dropped %s expired windows", len(expired))
    return len(expired)

  def __len__(self) -> int:
    with self._lock:
      return len(self._windows)

  @property
  def sweeper_running(self) -> bool:
    return self._sweeper is not None and not self._sweeper.done()

  def start_sweeper(self) -> None:
    if self.sweeper_running:
      return
    self._sweeper = asyncio.create_task(self._sweep_loop(), name="rate-limit-sweeper")

  async def stop_sweeper(self) -> None:
    task, self._sweeper = self._sweeper, None
    if task is None:
      return
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      pass

  async def _sweep_loop(self) -> None:
    while True:
      await asyncio.sleep(self._sweep_seconds)
      try:
        self.sweep()
      except Exception:
        logger.exception("Rate limiter sweep failed")
