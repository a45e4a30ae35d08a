"""Get coordinator: mutable-item lookups through a running session.

Values are returned exactly as the engine delivered them.  Item values
are opaque bytes end to end; no quoting convention is applied or removed.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from mutabledht.config import Config
from mutabledht.errors import ErrorKind
from mutabledht.events import GetEvent
from mutabledht.hashing import info_hash
from mutabledht.session import SessionManager

logger = structlog.get_logger()


@dataclass(frozen=True)
class GetResult:
    """Outcome of a lookup.

    A fire-and-forget lookup succeeds with an empty ``value``; the
    result itself arrives later in the correlator.
    """

    ok: bool
    error: ErrorKind | None = None
    value: bytes = b""
    sequence: int = 0
    authoritative: bool = False
    message: str = ""


class GetCoordinator:
    """Issues lookups and correlates their results.

    Args:
        session: Session context owning the engine and correlator.
        config: mutabledht configuration (``records`` section used).
    """

    def __init__(self, session: SessionManager, config: Config) -> None:
        self._session = session
        self._default_timeout = config.records.fetch_timeout

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def peek(self, public_key: bytes, salt: str) -> GetEvent | None:
        """Latest correlated result for the item, without waiting."""
        return self._session.correlator.find_get(info_hash(public_key, salt))

    def forget(self, public_key: bytes, salt: str) -> bool:
        """Discard any stale correlated result for the item."""
        return self._session.correlator.remove_get(info_hash(public_key, salt))

    def wait_for_all(self, infohashes: list[str], timeout: float) -> bool:
        """Wait until every item in *infohashes* has a correlated result."""
        return self._session.correlator.wait_for_all(infohashes, timeout)

    def submit_get(
        self,
        public_key: bytes,
        salt: str,
        timeout: float | None = None,
    ) -> GetResult:
        """Look up one mutable item.

        Without *timeout* the lookup is only fired.  With *timeout* any
        stale result for the item is discarded first, then the call blocks
        until a result arrives or the deadline passes.

        Returns:
            ``GetResult``; ``error`` is ``ENGINE_UNAVAILABLE`` or
            ``TIMEOUT`` on failure.
        """
        if timeout is None:
            return self._fire(public_key, salt)
        return self._wait(public_key, salt, timeout, authoritative=False)

    def get_authoritative(
        self,
        public_key: bytes,
        salt: str,
        timeout: float | None = None,
    ) -> GetResult:
        """Blocking lookup that ignores non-final results."""
        if timeout is None:
            timeout = self._default_timeout
        return self._wait(public_key, salt, timeout, authoritative=True)

    def _fire(self, public_key: bytes, salt: str) -> GetResult:
        unavailable = self._session.ensure_running()
        if unavailable is not None:
            return GetResult(
                ok=False, error=unavailable, message="DHT session is not running"
            )
        engine = self._session.engine
        if engine is None:
            return GetResult(
                ok=False,
                error=ErrorKind.ENGINE_UNAVAILABLE,
                message="DHT session is not running",
            )
        engine.lookup(public_key, salt)
        logger.debug("dht_get_issued", salt=salt)
        return GetResult(ok=True)

    def _wait(
        self,
        public_key: bytes,
        salt: str,
        timeout: float,
        *,
        authoritative: bool,
    ) -> GetResult:
        correlator = self._session.correlator
        key = info_hash(public_key, salt)
        correlator.remove_get(key)

        fired = self._fire(public_key, salt)
        if not fired.ok:
            return fired

        event = correlator.wait_for_get(key, timeout, authoritative=authoritative)
        if event is None:
            # A late result must not satisfy a later, unrelated call
            correlator.remove_get(key)
            if not correlator.running:
                return GetResult(
                    ok=False,
                    error=ErrorKind.ENGINE_UNAVAILABLE,
                    message="DHT session stopped while waiting",
                )
            logger.info("dht_get_timeout", salt=salt, timeout=timeout)
            return GetResult(
                ok=False,
                error=ErrorKind.TIMEOUT,
                message=f"No result for {salt!r} within {timeout:g}s",
            )
        logger.debug(
            "dht_get_result",
            salt=salt,
            sequence=event.sequence,
            authoritative=event.authoritative,
        )
        return GetResult(
            ok=True,
            value=event.value,
            sequence=event.sequence,
            authoritative=event.authoritative,
        )
