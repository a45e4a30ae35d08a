"""Event correlation: engine alerts to a rendezvous map.

The engine reports lookup results, put acknowledgements and bootstrap
completion as alerts on its own thread.  ``EventCorrelator`` publishes
the latest lookup result per item (keyed by infohash), the latest put
acknowledgement per item, and a bounded log of session events.  Caller
threads wait on a condition variable instead of sleeping in poll loops;
``Condition.wait`` releases the lock, so no lock is held while waiting.

Usage::

    correlator = EventCorrelator()
    correlator.start(engine)          # engine now delivers alerts here
    event = correlator.wait_for_get(infohash, timeout=2.0)
    correlator.stop(engine)
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum

import structlog

from mutabledht.engine import EngineHandle
from mutabledht.hashing import info_hash

logger = structlog.get_logger()

DEFAULT_MAX_EVENTS = 1024


# ── Alerts delivered by the engine ─────────────────────────────────


@dataclass(frozen=True)
class MutableItemAlert:
    """A lookup produced a (possibly non-final) mutable item."""

    public_key: bytes
    salt: str
    value: bytes
    sequence: int
    authoritative: bool
    signature: bytes = b""


@dataclass(frozen=True)
class PutAlert:
    """A put finished; ``num_success`` nodes stored the item."""

    public_key: bytes
    salt: str
    sequence: int
    num_success: int
    message: str = ""


@dataclass(frozen=True)
class BootstrapAlert:
    """The engine finished bootstrapping its routing table."""

    message: str = ""


# ── Correlated events ─────────────────────────────────────────────


class EventKind(StrEnum):
    """Session event log categories."""

    BOOTSTRAP = "bootstrap"
    MUTABLE_ITEM = "mutable_item"
    PUT = "put"


@dataclass(frozen=True)
class GetEvent:
    """Latest lookup result for one ``(public_key, salt)``."""

    public_key: bytes
    salt: str
    value: bytes
    sequence: int
    authoritative: bool
    received_at: float = 0.0

    @property
    def infohash(self) -> str:
        return info_hash(self.public_key, self.salt)


@dataclass(frozen=True)
class PutEvent:
    """Latest put acknowledgement for one ``(public_key, salt)``."""

    public_key: bytes
    salt: str
    sequence: int
    num_success: int
    message: str = ""
    received_at: float = 0.0


@dataclass(frozen=True)
class SessionEvent:
    """One entry in the shared event log."""

    kind: EventKind
    timestamp: float
    message: str = ""
    infohash: str = ""


@dataclass
class CorrelatorStats:
    """Runtime counters."""

    alerts_received: int = 0
    alerts_dropped: int = 0
    gets_published: int = 0
    puts_acknowledged: int = 0
    bootstraps: int = 0
    unknown_alerts: int = 0


class EventCorrelator:
    """Publishes engine alerts into shared, waitable maps.

    Args:
        clock: Monotonic time source for event timestamps.
        max_events: Capacity of the session event log.
        max_acks: Put acknowledgements kept for waiters that have not
            claimed them yet.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_events: int = DEFAULT_MAX_EVENTS,
        max_acks: int = DEFAULT_MAX_EVENTS,
    ) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._gets: dict[str, GetEvent] = {}
        self._puts: dict[str, PutEvent] = {}
        self._events: deque[SessionEvent] = deque(maxlen=max_events)
        self._max_acks = max(1, max_acks)
        self._running = False
        self._stats = CorrelatorStats()

    @property
    def stats(self) -> CorrelatorStats:
        return self._stats

    @property
    def running(self) -> bool:
        return self._running

    def now(self) -> float:
        return self._clock()

    # ─── Lifecycle ─────────────────────────────────────────

    def start(self, engine: EngineHandle) -> None:
        """Begin receiving alerts from *engine*."""
        with self._cond:
            self._running = True
        engine.set_alert_handler(self.handle_alert)
        logger.debug("event_correlator_started")

    def stop(self, engine: EngineHandle | None = None) -> None:
        """Detach from *engine* and drop any alert arriving afterwards."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._cond.notify_all()
        if engine is not None:
            engine.set_alert_handler(None)
        logger.debug("event_correlator_stopped")

    # ─── Alert dispatch (engine thread) ────────────────────

    def handle_alert(self, alert: object) -> None:
        """Publish one engine alert and wake any waiters."""
        now = self._clock()
        with self._cond:
            if not self._running:
                self._stats.alerts_dropped += 1
                return
            self._stats.alerts_received += 1

            if isinstance(alert, MutableItemAlert):
                event = GetEvent(
                    public_key=alert.public_key,
                    salt=alert.salt,
                    value=alert.value,
                    sequence=alert.sequence,
                    authoritative=alert.authoritative,
                    received_at=now,
                )
                self._gets[event.infohash] = event
                self._events.append(
                    SessionEvent(EventKind.MUTABLE_ITEM, now, infohash=event.infohash)
                )
                self._stats.gets_published += 1
            elif isinstance(alert, PutAlert):
                key = info_hash(alert.public_key, alert.salt)
                current = self._puts.pop(key, None)
                if current is not None and current.sequence > alert.sequence:
                    # A late ack for an older put never hides a newer one
                    self._puts[key] = current
                else:
                    self._puts[key] = PutEvent(
                        public_key=alert.public_key,
                        salt=alert.salt,
                        sequence=alert.sequence,
                        num_success=alert.num_success,
                        message=alert.message,
                        received_at=now,
                    )
                while len(self._puts) > self._max_acks:
                    del self._puts[next(iter(self._puts))]
                self._events.append(
                    SessionEvent(EventKind.PUT, now, alert.message, infohash=key)
                )
                self._stats.puts_acknowledged += 1
            elif isinstance(alert, BootstrapAlert):
                self._events.append(
                    SessionEvent(EventKind.BOOTSTRAP, now, alert.message)
                )
                self._stats.bootstraps += 1
            else:
                self._stats.unknown_alerts += 1
                return

            self._cond.notify_all()

    # ─── Lookup results ────────────────────────────────────

    def find_get(self, infohash: str) -> GetEvent | None:
        """Non-blocking read of the latest result for *infohash*."""
        with self._cond:
            return self._gets.get(infohash)

    def remove_get(self, infohash: str) -> bool:
        """Drop a stale result before issuing a fresh blocking lookup."""
        with self._cond:
            return self._gets.pop(infohash, None) is not None

    def wait_for_get(
        self,
        infohash: str,
        timeout: float,
        *,
        authoritative: bool = False,
    ) -> GetEvent | None:
        """Block until a result for *infohash* is published.

        With ``authoritative=True`` non-final results are skipped.

        Returns:
            The event, or ``None`` on timeout or shutdown.
        """

        def _ready() -> GetEvent | None:
            event = self._gets.get(infohash)
            if event is None or (authoritative and not event.authoritative):
                return None
            return event

        with self._cond:
            self._cond.wait_for(
                lambda: _ready() is not None or not self._running,
                timeout=max(0.0, timeout),
            )
            return _ready()

    def wait_for_all(self, infohashes: Iterable[str], timeout: float) -> bool:
        """Block until every infohash has a result, or *timeout* elapses.

        Returns:
            ``True`` if all results arrived within the window.
        """
        pending = set(infohashes)
        if not pending:
            return True
        with self._cond:
            self._cond.wait_for(
                lambda: pending.issubset(self._gets.keys()) or not self._running,
                timeout=max(0.0, timeout),
            )
            return pending.issubset(self._gets.keys())

    # ─── Put acknowledgements ──────────────────────────────

    def wait_for_put(
        self,
        infohash: str,
        since: float,
        timeout: float,
        *,
        sequence: int | None = None,
    ) -> PutEvent | None:
        """Block until a put acknowledgement newer than *since* arrives.

        With *sequence* set, acknowledgements for other sequence numbers
        are ignored.  A returned acknowledgement is consumed.
        """

        def _ready() -> bool:
            event = self._puts.get(infohash)
            if event is None or event.received_at < since:
                return False
            return sequence is None or event.sequence == sequence

        with self._cond:
            self._cond.wait_for(
                lambda: _ready() or not self._running,
                timeout=max(0.0, timeout),
            )
            if not _ready():
                return None
            return self._puts.pop(infohash)

    def pending_acks(self) -> int:
        """Number of put acknowledgements held for waiters."""
        with self._cond:
            return len(self._puts)

    # ─── Session event log ─────────────────────────────────

    def events_since(self, kind: EventKind, since: float) -> list[SessionEvent]:
        with self._cond:
            return [e for e in self._events if e.kind == kind and e.timestamp >= since]

    def wait_for_event(
        self, kind: EventKind, since: float, timeout: float
    ) -> SessionEvent | None:
        """Block until an event of *kind* newer than *since* is logged.

        Returns ``None`` on timeout, or as soon as the correlator stops.
        """

        def _latest() -> SessionEvent | None:
            for event in reversed(self._events):
                if event.kind == kind and event.timestamp >= since:
                    return event
            return None

        with self._cond:
            self._cond.wait_for(
                lambda: _latest() is not None or not self._running,
                timeout=max(0.0, timeout),
            )
            return _latest()
