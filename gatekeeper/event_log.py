"""
Security Event Log

Events are appended without blocking the request path. A single writer task
drains a bounded queue into the event store, so events reach the store in
the order they were appended.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from .records import EventFilter, EventType, SecurityEvent, utcnow
from .store import EventStore

logger = logging.getLogger(__name__)


class SecurityEventLog:
    """Append-only sink for auth and security events"""

    def __init__(self, store: EventStore, max_pending: int = 10000, timeout: float = 2.0,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.max_pending = max_pending
        self.timeout = timeout
        self.clock = clock
        self.dropped = 0
        self.written = 0
        self._queue: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._writer is not None and not self._writer.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self):
        """Start the writer task on the running loop"""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_pending)
        self._writer = asyncio.get_running_loop().create_task(self._drain())

    async def stop(self):
        """Flush pending events and stop the writer"""
        if not self.running:
            return
        await self.flush()
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        self._writer = None

    async def _write(self, event: SecurityEvent):
        try:
            await asyncio.wait_for(self.store.append_event(event), self.timeout)
            self.written += 1
        except Exception as e:
            # The caller has already moved on; count and report the loss
            self.dropped += 1
            logger.warning(f"Failed to store security event {event.type.value} from {event.ip}: {e!r}")

    async def _drain(self):
        while True:
            event = await self._queue.get()
            try:
                await self._write(event)
            finally:
                self._queue.task_done()

    async def append(self, event: SecurityEvent) -> None:
        """Queue an event; never raises"""
        try:
            if not self.running:
                self.start()
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Security event queue full, dropping {event.type.value} from {event.ip}")
        except RuntimeError:
            # No running loop: write through
            await self._write(event)

    async def record(self, event_type: EventType, ip: str, user_agent: str = "",
                     user_id: Optional[str] = None, **details) -> SecurityEvent:
        """Build and append an event"""
        event = SecurityEvent(
            type=event_type,
            ip=ip or "unknown",
            user_agent=user_agent,
            user_id=user_id,
            timestamp=self.clock(),
            details=details,
        )
        await self.append(event)
        return event

    async def flush(self):
        """Wait until queued events have been written, bounded by the timeout"""
        if not self.running or self._queue is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Security event flush timed out with {self.pending} pending")

    async def query(self, flt: EventFilter) -> List[SecurityEvent]:
        """Events matching flt ordered by timestamp ascending"""
        await self.flush()
        return await asyncio.wait_for(self.store.query_events(flt), self.timeout)

    async def user_events(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        """Most recent events for a user, newest first"""
        events = await self.query(EventFilter(user_id=user_id, limit=limit))
        return list(reversed(events))
