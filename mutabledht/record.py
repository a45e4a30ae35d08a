"""Record data model: keys, headers, chunks and assembled records.

A logical record is stored as one header item plus ``n_chunks`` chunk
items under the same public key.  Salts are derived deterministically
from the operation type::

    header   -> "<operation_type>:0"
    chunk i  -> "<operation_type>:<i + 1>"

Headers are msgpack-encoded; chunk values are opaque bytes.  All items of
one submission share a single sequence number.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

import msgpack

from mutabledht.hashing import content_hash, info_hash

HEADER_VERSION = 1


def header_salt(operation_type: str) -> str:
    """Salt of the header item for *operation_type*."""
    return f"{operation_type}:0"


def chunk_salt(operation_type: str, index: int) -> str:
    """Salt of chunk *index* (zero-based) for *operation_type*."""
    return f"{operation_type}:{index + 1}"


@dataclass(frozen=True)
class RecordKey:
    """Identity of one logical record for put locking.

    Unique per owner and operation, not per salt: the header and every
    chunk of a record share one ``RecordKey``.
    """

    public_key: bytes
    operation_code: str


@dataclass(frozen=True)
class ItemKey:
    """Identity of one physical DHT item (header or a single chunk)."""

    public_key: bytes
    salt: str

    @property
    def infohash(self) -> str:
        return info_hash(self.public_key, self.salt)


@dataclass(frozen=True)
class RecordHeader:
    """Header item describing how many chunks make up a record.

    ``digest`` and ``data_size`` are optional integrity metadata over the
    concatenated chunk values; empty/zero means "not provided".
    """

    operation_type: str
    n_chunks: int
    data_size: int = 0
    digest: str = ""
    version: int = HEADER_VERSION

    def encode(self) -> bytes:
        """Serialize the header to its on-overlay form."""
        return msgpack.packb(
            {
                "v": self.version,
                "op": self.operation_type,
                "n": self.n_chunks,
                "size": self.data_size,
                "digest": self.digest,
            },
            use_bin_type=True,
        )

    @classmethod
    def decode(cls, raw: bytes | None) -> RecordHeader | None:
        """Parse an encoded header.

        Returns ``None`` (a "null header") for empty, unparsable or
        structurally invalid input.
        """
        if not raw:
            return None
        try:
            data = msgpack.unpackb(raw, raw=False)
        except (msgpack.exceptions.UnpackException, ValueError, TypeError):
            return None
        if not isinstance(data, dict):
            return None
        n_chunks = data.get("n")
        operation_type = data.get("op")
        if not isinstance(n_chunks, int) or n_chunks < 0:
            return None
        if not isinstance(operation_type, str):
            return None
        size = data.get("size", 0)
        digest = data.get("digest", "")
        version = data.get("v", HEADER_VERSION)
        return cls(
            operation_type=operation_type,
            n_chunks=n_chunks,
            data_size=size if isinstance(size, int) else 0,
            digest=digest if isinstance(digest, str) else "",
            version=version if isinstance(version, int) else HEADER_VERSION,
        )


@dataclass(frozen=True)
class DataChunk:
    """One chunk item of a record, ordered by ``index``."""

    index: int
    total_count: int
    salt: str
    value: bytes


@dataclass(frozen=True)
class DataRecord:
    """A header plus its ordered chunks.

    ``private_seed`` is carried for downstream integrity/decryption and is
    never inspected here.  A record with a non-empty ``error_message`` is
    invalid and must be treated as not found.
    """

    operation_type: str
    header: RecordHeader
    chunks: tuple[DataChunk, ...] = ()
    private_seed: bytes = b""
    owner_path: str = ""
    error_message: str = ""
    total_slots: int = 32
    sequence: int = field(default=0, compare=False)

    @property
    def operation_code(self) -> str:
        return self.operation_type

    @property
    def valid(self) -> bool:
        return not self.error_message

    @property
    def has_error(self) -> bool:
        return bool(self.error_message)

    @property
    def value(self) -> bytes:
        """Concatenated chunk values in index order."""
        return b"".join(chunk.value for chunk in self.chunks)

    @property
    def salts(self) -> list[str]:
        return [header_salt(self.operation_type)] + [c.salt for c in self.chunks]

    def with_owner(self, owner_path: str) -> DataRecord:
        """Return a copy annotated with ownership metadata."""
        return replace(self, owner_path=owner_path)

    @classmethod
    def create(
        cls,
        operation_type: str,
        value: bytes,
        private_seed: bytes = b"",
        *,
        max_chunk_size: int = 900,
        total_slots: int = 32,
    ) -> DataRecord:
        """Split *value* into chunks and build a record ready to put."""
        pieces = [
            value[i : i + max_chunk_size] for i in range(0, len(value), max_chunk_size)
        ]
        header = RecordHeader(
            operation_type=operation_type,
            n_chunks=len(pieces),
            data_size=len(value),
            digest=content_hash(value),
        )
        chunks = [
            DataChunk(
                index=i,
                total_count=len(pieces),
                salt=chunk_salt(operation_type, i),
                value=piece,
            )
            for i, piece in enumerate(pieces)
        ]
        return cls.assemble(operation_type, total_slots, header, chunks, private_seed)

    @classmethod
    def assemble(
        cls,
        operation_type: str,
        total_slots: int,
        header: RecordHeader,
        chunks: list[DataChunk],
        private_seed: bytes = b"",
        *,
        sequence: int = 0,
    ) -> DataRecord:
        """Bind a header and its chunks into a record, validating them.

        Validation problems are reported through ``error_message``;
        nothing is raised.
        """
        ordered = tuple(chunks)
        record = cls(
            operation_type=operation_type,
            header=header,
            chunks=ordered,
            private_seed=private_seed,
            total_slots=total_slots,
            sequence=sequence,
        )
        error = _validate(record)
        if error:
            return replace(record, error_message=error)
        return record


def _validate(record: DataRecord) -> str:
    header = record.header
    if header.operation_type != record.operation_type:
        return (
            f"header operation {header.operation_type!r} does not match "
            f"{record.operation_type!r}"
        )
    if header.n_chunks > record.total_slots:
        return (
            f"header declares {header.n_chunks} chunks, "
            f"limit is {record.total_slots}"
        )
    if header.n_chunks != len(record.chunks):
        return f"header declares {header.n_chunks} chunks, got {len(record.chunks)}"
    for position, chunk in enumerate(record.chunks):
        if chunk.index != position:
            return f"chunk {chunk.index} out of order at position {position}"
        if chunk.salt != chunk_salt(record.operation_type, position):
            return f"chunk {position} has unexpected salt {chunk.salt!r}"
    joined = record.value
    if header.data_size and header.data_size != len(joined):
        return f"size mismatch: header {header.data_size}, chunks {len(joined)}"
    if header.digest and header.digest != content_hash(joined):
        return "digest mismatch between header and chunks"
    return ""
