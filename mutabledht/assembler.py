"""Record assembler: multi-item records over the get/put coordinators.

``fetch_record`` resolves one owner's record: the header first (with a
bounded number of retries), then each chunk in order.  A chunk lookup is
never issued before a non-null header declaring at least one chunk has
been resolved, and a record is returned whole or not at all.

Batch fetching comes in two flavours:

* ``fetch_all_sync`` runs ``fetch_record`` once per peer, sequentially.
* ``fetch_all_async`` pipelines the lookups in two phases: fire every
  header lookup, settle, drain; then fire every chunk lookup of every
  resolved header, settle, drain.  A chunk still missing after the second
  settle window gets one synchronous fallback lookup; if that fails too,
  the peer is skipped and a diagnostic is recorded.

Settle windows end as soon as every expected result has arrived but never
run past their configured length, so peers whose answers are slower than
the window depend on the fallback path.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import structlog

from mutabledht.config import Config
from mutabledht.errors import ErrorKind
from mutabledht.get import GetCoordinator
from mutabledht.hashing import info_hash, short_hash
from mutabledht.keys import KeyPair
from mutabledht.put import PutCoordinator, PutResult
from mutabledht.record import (
    DataChunk,
    DataRecord,
    RecordHeader,
    chunk_salt,
    header_salt,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class PeerLink:
    """One peer whose record should be fetched."""

    public_key: bytes
    private_seed: bytes = b""
    owner_path: str = ""


@dataclass(frozen=True)
class FetchResult:
    """Outcome of ``fetch_record``."""

    found: bool
    record: DataRecord | None = None
    sequence: int = 0
    error: ErrorKind | None = None
    message: str = ""


@dataclass
class BatchFetchResult:
    """Records assembled by a batch fetch plus per-peer diagnostics."""

    records: list[DataRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def error_text(self) -> str:
        """Cumulative diagnostic string."""
        return "\n".join(self.errors)


@dataclass
class _PendingPeer:
    link: PeerLink
    header: RecordHeader | None = None
    sequence: int = 0


class RecordAssembler:
    """Splits records into items on put and reassembles them on get.

    Args:
        get: Get coordinator used for every lookup.
        put: Put coordinator used by ``submit_record``.
        config: mutabledht configuration.
        sleep: Pacing function between pipelined lookups.
    """

    def __init__(
        self,
        get: GetCoordinator,
        put: PutCoordinator,
        config: Config,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._get = get
        self._put = put
        self._records = config.records
        self._batch = config.batch
        self._sleep = sleep

    # ─── Single record ─────────────────────────────────────

    def fetch_record(
        self,
        public_key: bytes,
        private_seed: bytes,
        operation_type: str,
    ) -> FetchResult:
        """Fetch and validate one owner's record for *operation_type*."""
        owner = short_hash(public_key)
        header, sequence, error = self._fetch_header(public_key, operation_type)
        if header is None:
            logger.debug("record_header_missing", owner=owner, op=operation_type)
            return FetchResult(
                found=False,
                error=error,
                message=f"No header for {header_salt(operation_type)!r}",
            )
        if header.n_chunks > self._records.total_slots:
            return FetchResult(
                found=False,
                error=ErrorKind.MALFORMED_RECORD,
                message=(
                    f"header declares {header.n_chunks} chunks, "
                    f"limit is {self._records.total_slots}"
                ),
            )

        chunks: list[DataChunk] = []
        for index in range(header.n_chunks):
            salt = chunk_salt(operation_type, index)
            result = self._get.submit_get(
                public_key, salt, timeout=self._records.fetch_timeout
            )
            if not result.ok:
                logger.debug("record_chunk_missing", owner=owner, salt=salt)
                return FetchResult(
                    found=False,
                    error=ErrorKind.NOT_FOUND,
                    message=f"Missing chunk {salt!r}",
                )
            if result.sequence != sequence:
                return FetchResult(
                    found=False,
                    error=ErrorKind.MALFORMED_RECORD,
                    message=(
                        f"chunk {salt!r} has sequence {result.sequence}, "
                        f"header has {sequence}"
                    ),
                )
            chunks.append(DataChunk(index, header.n_chunks, salt, result.value))

        record = DataRecord.assemble(
            operation_type,
            self._records.total_slots,
            header,
            chunks,
            private_seed,
            sequence=sequence,
        )
        if record.has_error:
            logger.warning(
                "record_invalid",
                owner=owner,
                op=operation_type,
                error=record.error_message,
            )
            return FetchResult(
                found=False,
                error=ErrorKind.MALFORMED_RECORD,
                message=record.error_message,
            )
        return FetchResult(found=True, record=record, sequence=sequence)

    def _fetch_header(
        self, public_key: bytes, operation_type: str
    ) -> tuple[RecordHeader | None, int, ErrorKind]:
        salt = header_salt(operation_type)
        error = ErrorKind.NOT_FOUND
        for attempt in range(1 + self._records.header_retries):
            result = self._get.submit_get(
                public_key, salt, timeout=self._records.fetch_timeout
            )
            if not result.ok:
                error = result.error or ErrorKind.NOT_FOUND
                if error == ErrorKind.ENGINE_UNAVAILABLE:
                    break
                continue
            header = RecordHeader.decode(result.value)
            if header is not None:
                return header, result.sequence, error
            logger.debug("record_header_null", salt=salt, attempt=attempt)
            error = ErrorKind.NOT_FOUND
        return None, 0, error

    def submit_record(
        self,
        keypair: KeyPair,
        operation_type: str,
        value: bytes,
        private_seed: bytes = b"",
        last_sequence: int = 0,
    ) -> PutResult:
        """Split *value* into a record and publish it."""
        record = DataRecord.create(
            operation_type,
            value,
            private_seed,
            max_chunk_size=self._records.max_chunk_size,
            total_slots=self._records.total_slots,
        )
        return self._put.submit_put(
            keypair.public_key_bytes(),
            keypair.private_key_bytes(),
            last_sequence,
            record,
        )

    # ─── Batches ───────────────────────────────────────────

    def fetch_all_sync(
        self, links: Iterable[PeerLink], operation_type: str
    ) -> BatchFetchResult:
        """Fetch each peer's record in turn; failing peers are skipped."""
        batch = BatchFetchResult()
        for link in links:
            result = self.fetch_record(
                link.public_key, link.private_seed, operation_type
            )
            if result.found and result.record is not None:
                batch.records.append(result.record.with_owner(link.owner_path))
            else:
                batch.errors.append(f"{_peer_label(link)}: {result.message}")
        logger.info(
            "record_batch_fetched",
            mode="sync",
            op=operation_type,
            found=len(batch.records),
            skipped=len(batch.errors),
        )
        return batch

    def fetch_all_async(
        self, links: Iterable[PeerLink], operation_type: str
    ) -> BatchFetchResult:
        """Fetch every peer's record with two pipelined lookup rounds."""
        batch = BatchFetchResult()
        peers = [_PendingPeer(link) for link in links]
        h_salt = header_salt(operation_type)

        # Phase 1: headers
        issued: list[_PendingPeer] = []
        for i, peer in enumerate(peers):
            if i:
                self._sleep(self._batch.header_issue_delay)
            self._get.forget(peer.link.public_key, h_salt)
            fired = self._get.submit_get(peer.link.public_key, h_salt)
            if not fired.ok:
                batch.errors.append(f"{_peer_label(peer.link)}: {fired.message}")
                continue
            issued.append(peer)
        self._get.wait_for_all(
            [info_hash(p.link.public_key, h_salt) for p in issued],
            self._batch.header_settle,
        )

        resolved: list[_PendingPeer] = []
        for peer in issued:
            event = self._get.peek(peer.link.public_key, h_salt)
            header = RecordHeader.decode(event.value) if event else None
            if event is None or header is None:
                batch.errors.append(f"{_peer_label(peer.link)}: no header")
                continue
            if header.n_chunks > self._records.total_slots:
                batch.errors.append(
                    f"{_peer_label(peer.link)}: header declares "
                    f"{header.n_chunks} chunks"
                )
                continue
            peer.header = header
            peer.sequence = event.sequence
            resolved.append(peer)

        # Phase 2: chunks of every resolved header
        expected: list[str] = []
        first = True
        for peer in resolved:
            assert peer.header is not None
            for index in range(peer.header.n_chunks):
                if not first:
                    self._sleep(self._batch.chunk_issue_delay)
                first = False
                salt = chunk_salt(operation_type, index)
                self._get.forget(peer.link.public_key, salt)
                self._get.submit_get(peer.link.public_key, salt)
                expected.append(info_hash(peer.link.public_key, salt))
        self._get.wait_for_all(expected, self._batch.chunk_settle)

        for peer in resolved:
            record, problem = self._drain_peer(peer, operation_type)
            if record is None:
                batch.errors.append(f"{_peer_label(peer.link)}: {problem}")
                continue
            batch.records.append(record.with_owner(peer.link.owner_path))

        if batch.errors:
            logger.warning(
                "record_batch_skipped",
                op=operation_type,
                skipped=len(batch.errors),
            )
        logger.info(
            "record_batch_fetched",
            mode="async",
            op=operation_type,
            found=len(batch.records),
            skipped=len(batch.errors),
        )
        return batch

    def _drain_peer(
        self, peer: _PendingPeer, operation_type: str
    ) -> tuple[DataRecord | None, str]:
        header = peer.header
        assert header is not None
        public_key = peer.link.public_key
        chunks: list[DataChunk] = []
        for index in range(header.n_chunks):
            salt = chunk_salt(operation_type, index)
            event = self._get.peek(public_key, salt)
            if event is not None and event.sequence == peer.sequence:
                value = event.value
            else:
                result = self._get.submit_get(
                    public_key, salt, timeout=self._records.fetch_timeout
                )
                if not result.ok:
                    return None, f"missing chunk {salt!r} ({result.message})"
                if result.sequence != peer.sequence:
                    return None, (
                        f"chunk {salt!r} has sequence {result.sequence}, "
                        f"header has {peer.sequence}"
                    )
                value = result.value
            chunks.append(DataChunk(index, header.n_chunks, salt, value))

        record = DataRecord.assemble(
            operation_type,
            self._records.total_slots,
            header,
            chunks,
            peer.link.private_seed,
            sequence=peer.sequence,
        )
        if record.has_error:
            return None, record.error_message
        return record, ""


def _peer_label(link: PeerLink) -> str:
    return link.owner_path or short_hash(link.public_key)
