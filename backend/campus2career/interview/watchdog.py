import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger("watchdog")


class SilenceWatchdog:
	"""
	Single-shot resettable timer on the running event loop.
	At most one on_fire per arm/reset cycle; disarm is always safe.
	"""

	def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
		self._loop = loop
		self._handle: asyncio.TimerHandle | None = None
		self._duration = 0.0
		self._on_fire: Callable[[], None] | None = None
		self._generation = 0
		self.fired_count = 0

	@property
	def armed(self) -> bool:
		return self._handle is not None

	@property
	def duration(self) -> float:
		return self._duration

	def arm(self, duration_sec: float, on_fire: Callable[[], None]) -> None:
		self._duration = max(0.0, float(duration_sec))
		self._on_fire = on_fire
		self._schedule()

	def reset(self) -> bool:
		if self._on_fire is None:
			return False
		self._schedule()
		return True

	def disarm(self) -> None:
		self._cancel()
		self._on_fire = None

	def _schedule(self) -> None:
		self._cancel()
		loop = self._loop or asyncio.get_running_loop()
		generation = self._generation
		self._handle = loop.call_later(self._duration, self._fire, generation)

	def _cancel(self) -> None:
		# Any callback already queued by the loop carries an old generation and becomes a no-op.
		self._generation += 1
		if self._handle is not None:
			self._handle.cancel()
			self._handle = None

	def _fire(self, generation: int) -> None:
		if generation != self._generation or self._on_fire is None:
			return
		self._handle = None
		self._generation += 1
		self.fired_count += 1
		try:
			self._on_fire()
		except Exception:
			logger.exception("Silence watchdog callback failed")


class ElapsedCounter:
	"""Per-question time-spent counter in whole seconds."""

	def __init__(self, clock: Callable[[], float] = time.monotonic):
		self._clock = clock
		self._started_at: float | None = None

	@property
	def running(self) -> bool:
		return self._started_at is not None

	def start(self) -> None:
		if self._started_at is None:
			self._started_at = self._clock()

	def seconds(self) -> int:
		if self._started_at is None:
			return 0
		return max(0, int(self._clock() - self._started_at))

	def clear(self) -> None:
		self._started_at = None
