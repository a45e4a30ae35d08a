"""Tests for record headers, chunk splitting and validation."""

from __future__ import annotations

import msgpack

from mutabledht.hashing import content_hash, info_hash
from mutabledht.record import (
    DataChunk,
    DataRecord,
    ItemKey,
    RecordHeader,
    RecordKey,
    chunk_salt,
    header_salt,
)


class TestSalts:
    def test_header_salt(self) -> None:
        assert header_salt("profile") == "profile:0"

    def test_chunk_salts_are_one_based(self) -> None:
        assert chunk_salt("profile", 0) == "profile:1"
        assert chunk_salt("profile", 1) == "profile:2"

    def test_item_key_infohash(self) -> None:
        key = ItemKey(b"\x01" * 32, "profile:0")
        assert key.infohash == info_hash(b"\x01" * 32, "profile:0")
        assert key.infohash != ItemKey(b"\x01" * 32, "profile:1").infohash

    def test_record_key_ignores_salt(self) -> None:
        assert RecordKey(b"k", "profile") == RecordKey(b"k", "profile")
        assert RecordKey(b"k", "profile") != RecordKey(b"k", "avatar")


class TestRecordHeader:
    def test_encode_decode(self) -> None:
        header = RecordHeader("profile", 2, data_size=4, digest="abc")
        decoded = RecordHeader.decode(header.encode())
        assert decoded == header

    def test_decode_empty_is_null(self) -> None:
        assert RecordHeader.decode(b"") is None
        assert RecordHeader.decode(None) is None

    def test_decode_garbage_is_null(self) -> None:
        assert RecordHeader.decode(b"\xc1\xff\x00") is None
        assert RecordHeader.decode(b"not msgpack at all") is None

    def test_decode_non_map_is_null(self) -> None:
        assert RecordHeader.decode(msgpack.packb([1, 2, 3])) is None

    def test_decode_negative_count_is_null(self) -> None:
        raw = msgpack.packb({"v": 1, "op": "profile", "n": -1})
        assert RecordHeader.decode(raw) is None

    def test_decode_missing_optional_fields(self) -> None:
        raw = msgpack.packb({"op": "profile", "n": 3})
        header = RecordHeader.decode(raw)
        assert header is not None
        assert header.n_chunks == 3
        assert header.digest == ""
        assert header.data_size == 0


class TestDataRecordCreate:
    def test_split_into_chunks(self) -> None:
        record = DataRecord.create("profile", b"AABB", max_chunk_size=2)
        assert record.valid
        assert record.header.n_chunks == 2
        assert [c.value for c in record.chunks] == [b"AA", b"BB"]
        assert [c.salt for c in record.chunks] == ["profile:1", "profile:2"]
        assert record.value == b"AABB"

    def test_uneven_split(self) -> None:
        record = DataRecord.create("op", b"abcde", max_chunk_size=2)
        assert [c.value for c in record.chunks] == [b"ab", b"cd", b"e"]
        assert record.header.data_size == 5
        assert record.header.digest == content_hash(b"abcde")

    def test_empty_value_is_header_only(self) -> None:
        record = DataRecord.create("op", b"")
        assert record.valid
        assert record.header.n_chunks == 0
        assert record.chunks == ()

    def test_too_many_chunks_is_invalid(self) -> None:
        record = DataRecord.create("op", b"x" * 100, max_chunk_size=16, total_slots=4)
        assert record.has_error
        assert "limit is 4" in record.error_message

    def test_salts(self) -> None:
        record = DataRecord.create("op", b"abcd", max_chunk_size=2)
        assert record.salts == ["op:0", "op:1", "op:2"]

    def test_with_owner(self) -> None:
        record = DataRecord.create("op", b"abc").with_owner("peers/alice")
        assert record.owner_path == "peers/alice"


class TestDataRecordAssemble:
    def _chunks(self, *values: bytes) -> list[DataChunk]:
        return [
            DataChunk(i, len(values), chunk_salt("op", i), v)
            for i, v in enumerate(values)
        ]

    def test_valid(self) -> None:
        header = RecordHeader("op", 2)
        record = DataRecord.assemble("op", 32, header, self._chunks(b"A", b"B"))
        assert record.valid
        assert record.value == b"AB"

    def test_count_mismatch(self) -> None:
        header = RecordHeader("op", 3)
        record = DataRecord.assemble("op", 32, header, self._chunks(b"A", b"B"))
        assert record.has_error
        assert "declares 3" in record.error_message

    def test_operation_mismatch(self) -> None:
        header = RecordHeader("other", 1)
        record = DataRecord.assemble("op", 32, header, self._chunks(b"A"))
        assert record.has_error

    def test_out_of_order_chunks(self) -> None:
        chunks = self._chunks(b"A", b"B")
        header = RecordHeader("op", 2)
        record = DataRecord.assemble("op", 32, header, list(reversed(chunks)))
        assert record.has_error
        assert "out of order" in record.error_message

    def test_digest_mismatch(self) -> None:
        header = RecordHeader("op", 1, data_size=1, digest=content_hash(b"Z"))
        record = DataRecord.assemble("op", 32, header, self._chunks(b"A"))
        assert record.has_error
        assert "digest" in record.error_message

    def test_size_mismatch(self) -> None:
        header = RecordHeader("op", 1, data_size=5)
        record = DataRecord.assemble("op", 32, header, self._chunks(b"A"))
        assert record.has_error
        assert "size" in record.error_message

    def test_private_seed_carried(self) -> None:
        header = RecordHeader("op", 1)
        record = DataRecord.assemble(
            "op", 32, header, self._chunks(b"A"), b"seed", sequence=7
        )
        assert record.private_seed == b"seed"
        assert record.sequence == 7
