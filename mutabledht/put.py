"""Put coordinator: cooldown-locked submission of multi-item records.

A record is published as its header item followed by one item per chunk,
all signed under ``last_sequence + 1``.  Each ``RecordKey`` (owner public
key + operation code) may be submitted at most once per cooldown window.

Puts are fire-and-forget here: ``submit_put`` returns once every item has
been *issued*.  Callers that need confirmation wait for the correlated put
acknowledgement themselves (see ``EventCorrelator.wait_for_put``).
"""

from __future__ import annotations

import functools
import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from mutabledht.config import Config
from mutabledht.errors import ErrorKind
from mutabledht.keys import make_signed_item, sign_mutable_item
from mutabledht.record import DataRecord, RecordKey, header_salt
from mutabledht.session import SessionManager

logger = structlog.get_logger()


@dataclass(frozen=True)
class PutResult:
    """Outcome of a put submission.

    Attributes:
        ok: ``True`` once every item was issued to the engine.
        error: Failure kind when ``ok`` is ``False``.
        message: Human-readable diagnostic.
        sequence: Sequence number the items were signed under.
        salts: Salts issued, in issue order.
        issued_at: Correlator timestamp taken just before the first item
            was issued; pass it as ``since`` when awaiting the ack.
    """

    ok: bool
    error: ErrorKind | None = None
    message: str = ""
    sequence: int = 0
    salts: tuple[str, ...] = ()
    issued_at: float = 0.0


@dataclass(frozen=True)
class Submission:
    """One accepted record in the submission log."""

    key: RecordKey
    record: DataRecord
    sequence: int
    submitted_at: float


class PutCoordinator:
    """Issues signed puts through a running session.

    Args:
        session: Session context owning the engine handle.
        config: mutabledht configuration (``records`` section used).
        clock: Time source for the cooldown lock.
    """

    def __init__(
        self,
        session: SessionManager,
        config: Config,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._cooldown = config.records.put_cooldown_seconds
        self._sweep_every = max(1, config.records.lock_sweep_every)
        self._clock = clock
        # RecordKey -> time of last accepted put
        self._locks: dict[RecordKey, float] = {}
        self._lock = threading.Lock()
        self._put_count = 0
        self._submissions: deque[Submission] = deque(
            maxlen=config.records.submission_log_size
        )

    @property
    def submissions(self) -> list[Submission]:
        """Snapshot of the submission log, oldest first."""
        with self._lock:
            return list(self._submissions)

    def last_put_time(self, key: RecordKey) -> float | None:
        with self._lock:
            return self._locks.get(key)

    def submit_put(
        self,
        public_key: bytes,
        private_key: bytes,
        last_sequence: int,
        record: DataRecord,
    ) -> PutResult:
        """Publish *record* under ``last_sequence + 1``.

        Returns:
            ``PutResult`` with ``error`` set to ``ENGINE_UNAVAILABLE``,
            ``MALFORMED_RECORD``, ``LOCKED`` or ``INVALID_ARGUMENT`` on
            failure.
        """
        unavailable = self._session.ensure_running()
        if unavailable is not None:
            return PutResult(
                ok=False,
                error=unavailable,
                message="DHT session is not running",
            )

        if record.has_error:
            logger.warning(
                "dht_put_rejected_malformed",
                operation=record.operation_code,
                error=record.error_message,
            )
            return PutResult(
                ok=False,
                error=ErrorKind.MALFORMED_RECORD,
                message=record.error_message,
            )

        key_error = _check_keys(public_key, private_key)
        if key_error:
            return PutResult(
                ok=False, error=ErrorKind.INVALID_ARGUMENT, message=key_error
            )

        key = RecordKey(public_key, record.operation_code)
        now = self._clock()
        with self._lock:
            last = self._locks.get(key)
            if last is not None and now - last < self._cooldown:
                remaining = math.ceil(self._cooldown - (now - last))
                message = (
                    "Record is locked. You need to wait at least "
                    f"{remaining} seconds before updating the same record "
                    "in the DHT."
                )
                logger.info(
                    "dht_put_locked",
                    operation=record.operation_code,
                    remaining=remaining,
                )
                return PutResult(ok=False, error=ErrorKind.LOCKED, message=message)
            self._locks[key] = now

        sequence = last_sequence + 1
        items = [(header_salt(record.operation_type), record.header.encode())]
        items.extend((chunk.salt, chunk.value) for chunk in record.chunks)

        issued_at = self._session.correlator.now()
        salts = self._issue(public_key, private_key, sequence, items)
        if salts is None:
            # Nothing went out, so release the cooldown stamp
            with self._lock:
                if self._locks.get(key) == now:
                    del self._locks[key]
            return PutResult(
                ok=False,
                error=ErrorKind.ENGINE_UNAVAILABLE,
                message="DHT session stopped while issuing puts",
            )

        with self._lock:
            self._submissions.append(Submission(key, record, sequence, now))
            self._put_count += 1
            sweep = self._put_count % self._sweep_every == 0
        if sweep:
            self.sweep_locks()

        logger.info(
            "dht_record_put",
            operation=record.operation_code,
            sequence=sequence,
            chunks=record.header.n_chunks,
        )
        return PutResult(
            ok=True,
            message=f"Issued {len(salts)} items",
            sequence=sequence,
            salts=tuple(salts),
            issued_at=issued_at,
        )

    def put_item(
        self,
        public_key: bytes,
        private_key: bytes,
        salt: str,
        value: bytes,
        last_sequence: int,
    ) -> PutResult:
        """Publish one raw item under ``last_sequence + 1`` without cooldown."""
        unavailable = self._session.ensure_running()
        if unavailable is not None:
            return PutResult(
                ok=False,
                error=unavailable,
                message="DHT session is not running",
            )
        key_error = _check_keys(public_key, private_key)
        if key_error:
            return PutResult(
                ok=False, error=ErrorKind.INVALID_ARGUMENT, message=key_error
            )
        sequence = last_sequence + 1
        issued_at = self._session.correlator.now()
        if self._issue(public_key, private_key, sequence, [(salt, value)]) is None:
            return PutResult(
                ok=False,
                error=ErrorKind.ENGINE_UNAVAILABLE,
                message="DHT session stopped while issuing puts",
            )
        return PutResult(
            ok=True,
            message="Issued 1 item",
            sequence=sequence,
            salts=(salt,),
            issued_at=issued_at,
        )

    def sweep_locks(self) -> int:
        """Drop lock entries older than the cooldown window.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, t in self._locks.items() if now - t >= self._cooldown]
            for key in expired:
                del self._locks[key]
        if expired:
            logger.debug("dht_put_locks_swept", removed=len(expired))
        return len(expired)

    def _issue(
        self,
        public_key: bytes,
        private_key: bytes,
        sequence: int,
        items: list[tuple[str, bytes]],
    ) -> list[str] | None:
        """Hand each ``(salt, value)`` to the engine with a bound signer.

        Returns ``None`` if the engine handle went away.
        """
        engine = self._session.engine
        if engine is None:
            return None
        salts = []
        for salt, value in items:
            signer = functools.partial(
                make_signed_item,
                value,
                sequence=sequence,
                public_key=public_key,
                private_key=private_key,
            )
            engine.put(public_key, salt, signer)
            salts.append(salt)
            logger.debug("dht_put_issued", salt=salt, sequence=sequence)
        return salts


def _check_keys(public_key: bytes, private_key: bytes) -> str:
    """Return an error message if the key pair cannot sign, else ``""``."""
    try:
        sign_mutable_item(b"", "", 0, public_key, private_key)
    except ValueError as exc:
        return str(exc)
    return ""
