"""DHT session lifecycle manager.

Owns the overlay engine handle and the event correlator, and drives them
through their life cycle::

    STOPPED -> STARTING -> BOOTSTRAPPING -> RUNNING -> STOPPING -> STOPPED

``start()`` launches one background thread that waits until the node is
ready (peers connected, chain synced, feature active), constructs the
engine, restores saved routing state, bootstraps, and then keeps checking
engine liveness every ``liveness_interval`` seconds, recovering a stopped
DHT by reloading state or re-bootstrapping.

Usage::

    session = SessionManager(config, engine_factory, readiness=probe)
    session.start()
    session.wait_until_running(timeout=60)
    ...
    session.stop()

This object is the explicit session context handed to every coordinator;
there is no process-wide session state.
"""

from __future__ import annotations

import threading
import time
from enum import StrEnum
from pathlib import Path

import structlog

from mutabledht.config import Config
from mutabledht.engine import (
    AlwaysReady,
    EngineFactory,
    EngineHandle,
    ReadinessProbe,
    is_ready,
)
from mutabledht.errors import ErrorKind
from mutabledht.events import EventCorrelator, EventKind

logger = structlog.get_logger()

# Settings applied to the engine before aborting it
_SHUTDOWN_SETTINGS: dict[str, object] = {"enable_dht": False, "alert_mask": 0}


class SessionState(StrEnum):
    """Lifecycle states for the DHT session."""

    STOPPED = "stopped"
    STARTING = "starting"
    BOOTSTRAPPING = "bootstrapping"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class SessionManager:
    """DHT session lifecycle manager.

    Args:
        config: mutabledht configuration.
        engine_factory: Builds the engine handle once the node is ready.
            May return ``None``, which fails startup.
        readiness: Startup gate; defaults to always ready.
        correlator: Shared event correlator (created if omitted).
    """

    def __init__(
        self,
        config: Config,
        engine_factory: EngineFactory,
        *,
        readiness: ReadinessProbe | None = None,
        correlator: EventCorrelator | None = None,
    ) -> None:
        self._config = config
        self._engine_factory = engine_factory
        self._readiness = readiness or AlwaysReady()
        self._correlator = correlator or EventCorrelator()

        self._state = SessionState.STOPPED
        self._engine: EngineHandle | None = None
        self._last_error = ""
        self._bootstrapped = False

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._running_event = threading.Event()
        # Serializes recovery so concurrent callers do not bootstrap twice
        self._recover_lock = threading.Lock()
        # Guards state, engine and thread hand-over between start, stop and
        # the background task
        self._lifecycle_lock = threading.Lock()

    # ─── Properties ────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._state

    @property
    def engine(self) -> EngineHandle | None:
        """The engine handle (available once started)."""
        return self._engine

    @property
    def correlator(self) -> EventCorrelator:
        return self._correlator

    @property
    def config(self) -> Config:
        return self._config

    @property
    def last_error(self) -> str:
        """Reason the background task failed, if it did."""
        return self._last_error

    @property
    def bootstrapped(self) -> bool:
        return self._bootstrapped

    @property
    def state_path(self) -> Path:
        """Fixed location of the persisted engine state blob."""
        return self._config.node.data_dir / self._config.session.state_file

    @property
    def max_shutdown_latency(self) -> float:
        """Upper bound on how long ``stop()`` may wait for in-flight calls.

        The bootstrap wait ends as soon as the correlator stops.  Blocking
        fetches are not cancelled, so the bound is the largest configured
        fetch timeout.
        """
        records = self._config.records
        return max(
            records.fetch_timeout,
            records.rpc_get_timeout,
            records.put_ack_timeout,
        )

    # ─── Lifecycle ─────────────────────────────────────────

    def start(self) -> None:
        """Spawn the background startup/liveness task.

        Returns immediately; use ``wait_until_running`` to block.
        """
        with self._lifecycle_lock:
            if self._state in (
                SessionState.STARTING,
                SessionState.BOOTSTRAPPING,
                SessionState.RUNNING,
            ):
                logger.warning("session_already_started", state=str(self._state))
                return

            self._state = SessionState.STARTING
            self._last_error = ""
            # Each run owns its stop flag; a thread left over from an
            # earlier run keeps seeing its own flag set.
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._running_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="mutabledht-session",
                daemon=True,
            )
            self._thread.start()
        logger.info("session_starting", state_path=str(self.state_path))

    def wait_until_running(self, timeout: float | None = None) -> bool:
        """Block until RUNNING; ``False`` on timeout or startup failure."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._state == SessionState.RUNNING:
                return True
            if self._state in (SessionState.ERROR, SessionState.STOPPED):
                return False
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait = 0.05 if remaining is None else min(0.05, remaining)
            if self._running_event.wait(wait):
                return True

    def stop(self) -> None:
        """Stop the session cleanly.

        Idempotent and safe to call when never started.  A pending
        bootstrap wait ends as soon as the correlator stops; blocking
        fetches already in flight are not cancelled, see
        ``max_shutdown_latency``.
        """
        with self._lifecycle_lock:
            if self._state == SessionState.STOPPED and self._thread is None:
                return
            previous = self._state
            self._state = SessionState.STOPPING
            self._stop_event.set()
            engine = self._engine
            thread = self._thread

        if engine is not None:
            if previous == SessionState.RUNNING:
                self.save_state()
            try:
                engine.apply_settings(dict(_SHUTDOWN_SETTINGS))
                engine.abort()
            except Exception:
                logger.exception("engine_abort_failed")
        self._correlator.stop(engine)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._config.session.join_timeout)
            if thread.is_alive():
                logger.warning(
                    "session_thread_timeout",
                    msg="session thread did not exit; abandoned as daemon",
                )

        with self._lifecycle_lock:
            self._thread = None
            self._engine = None
            self._bootstrapped = False
            self._running_event.clear()
            self._state = SessionState.STOPPED
        logger.info("session_stopped")

    # ─── Background task ───────────────────────────────────

    def _run(self, stop_event: threading.Event) -> None:
        try:
            if not self._wait_for_readiness(stop_event):
                return
            if self._start_engine(stop_event):
                self._liveness_loop(stop_event)
        except Exception as exc:
            with self._lifecycle_lock:
                if stop_event.is_set():
                    logger.exception("session_task_failed_during_stop")
                    return
                self._last_error = str(exc)
                self._state = SessionState.ERROR
            logger.exception("session_task_failed")

    def _wait_for_readiness(self, stop_event: threading.Event) -> bool:
        """Poll the readiness gate until ready or shutdown."""
        interval = self._config.session.readiness_poll_interval
        while not stop_event.is_set():
            if is_ready(self._readiness):
                return True
            stop_event.wait(interval)
        logger.info("session_start_cancelled")
        return False

    def _start_engine(self, stop_event: threading.Event) -> bool:
        """Build, restore and bootstrap the engine; ``True`` once RUNNING."""
        created_at = self._correlator.now()
        engine = self._engine_factory(self._config)

        with self._lifecycle_lock:
            stopped = stop_event.is_set()
            if engine is not None and not stopped:
                self._engine = engine
                self._correlator.start(engine)
                self._state = SessionState.BOOTSTRAPPING
            elif engine is None and not stopped:
                self._last_error = "engine factory returned no engine"
                self._state = SessionState.ERROR
        if engine is None:
            if not stopped:
                logger.error("session_engine_missing", msg=self._last_error)
            return False
        if stopped:
            logger.info("session_engine_discarded", reason="stopped during startup")
            engine.abort()
            return False

        self.load_state()
        if self.bootstrap(since=created_at) and not stop_event.is_set():
            self.save_state()

        with self._lifecycle_lock:
            if stop_event.is_set():
                return False
            self._state = SessionState.RUNNING
            self._running_event.set()
        logger.info("session_running", bootstrapped=self._bootstrapped)
        return True

    def _liveness_loop(self, stop_event: threading.Event) -> None:
        interval = self._config.session.liveness_interval
        while not stop_event.wait(interval):
            engine = self._engine
            if engine is not None and not engine.is_running():
                logger.warning("session_engine_not_running")
                self.recover()

    # ─── Bootstrap & recovery ──────────────────────────────

    def bootstrap(self, *, since: float | None = None) -> bool:
        """Wait for the engine to report bootstrap completion.

        Best effort: on timeout callers may continue in a degraded state.

        Args:
            since: Only bootstrap events at or after this correlator
                timestamp count (defaults to now).
        """
        timeout = self._config.session.bootstrap_timeout
        start = self._correlator.now() if since is None else since
        logger.info("session_bootstrapping", timeout=timeout)
        event = self._correlator.wait_for_event(EventKind.BOOTSTRAP, start, timeout)
        if event is None:
            logger.warning("session_bootstrap_timeout", timeout=timeout)
            return False
        self._bootstrapped = True
        logger.info("session_bootstrap_complete")
        return True

    def recover(self) -> bool:
        """Bring a stopped DHT back: reload saved state, else re-bootstrap."""
        with self._recover_lock:
            engine = self._engine
            if engine is None:
                return False
            if engine.is_running():
                return True
            if self.load_state():
                logger.info("session_recovered_from_state")
                return True
            logger.info("session_rebootstrap", reason="no usable saved state")
            if self.bootstrap():
                self.save_state()
                return True
            return False

    def ensure_running(self) -> ErrorKind | None:
        """Liveness check used by coordinators before touching the engine.

        Returns:
            ``None`` if the engine is usable, else
            ``ErrorKind.ENGINE_UNAVAILABLE``.
        """
        engine = self._engine
        if engine is None or self._state in (
            SessionState.STOPPING,
            SessionState.STOPPED,
            SessionState.ERROR,
        ):
            return ErrorKind.ENGINE_UNAVAILABLE
        if engine.is_running():
            return None
        logger.info("session_restarting_dht")
        if not self.recover():
            return ErrorKind.ENGINE_UNAVAILABLE
        return None

    # ─── State persistence ─────────────────────────────────

    def save_state(self) -> bool:
        """Write the engine's state blob to ``state_path``.

        Failures are logged, never raised.
        """
        engine = self._engine
        if engine is None:
            return False
        path = self.state_path
        try:
            blob = engine.save_state()
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_bytes(blob)
            tmp_path.replace(path)
        except Exception:
            logger.exception("session_state_save_failed", path=str(path))
            return False
        logger.debug("session_state_saved", path=str(path), size=len(blob))
        return True

    def load_state(self) -> bool:
        """Restore the engine's state blob from ``state_path``.

        Missing, empty or corrupt files are reported and ignored; the
        engine rejects unparsable blobs without partial changes.
        """
        engine = self._engine
        if engine is None:
            return False
        path = self.state_path
        try:
            blob = path.read_bytes()
        except FileNotFoundError:
            logger.debug("session_state_missing", path=str(path))
            return False
        except OSError:
            logger.warning("session_state_unreadable", path=str(path))
            return False
        if not blob:
            logger.debug("session_state_empty", path=str(path))
            return False
        try:
            engine.load_state(blob)
        except (ValueError, TypeError) as exc:
            logger.warning("session_state_corrupt", path=str(path), error=str(exc))
            return False
        logger.info("session_state_loaded", path=str(path))
        return True
