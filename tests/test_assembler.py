"""Tests for the record assembler: single fetch, batches, submit."""

from __future__ import annotations

import pytest
from loopback import LoopbackEngine

from mutabledht.assembler import PeerLink, RecordAssembler
from mutabledht.errors import ErrorKind
from mutabledht.keys import KeyPair
from mutabledht.put import PutCoordinator
from mutabledht.record import DataRecord, RecordHeader


def _publish(
    put: PutCoordinator, pair: KeyPair, op: str, value: bytes, chunk: int = 2
) -> int:
    record = DataRecord.create(op, value, max_chunk_size=chunk)
    result = put.submit_put(
        pair.public_key_bytes(), pair.private_key_bytes(), 0, record
    )
    assert result.ok
    return result.sequence


def _salts_for(engine: LoopbackEngine, pair: KeyPair) -> list[str]:
    pk = pair.public_key_bytes()
    return [salt for key, salt in engine.lookups if key == pk]


class TestFetchRecord:
    def test_profile_scenario(
        self,
        assembler: RecordAssembler,
        put_coordinator: PutCoordinator,
        keypair: KeyPair,
    ) -> None:
        """Header "profile:0" with two chunks "AA" and "BB" reassembles in order."""
        _publish(put_coordinator, keypair, "profile", b"AABB")
        result = assembler.fetch_record(keypair.public_key_bytes(), b"seed", "profile")
        assert result.found
        assert result.record is not None
        assert [c.value for c in result.record.chunks] == [b"AA", b"BB"]
        assert [c.salt for c in result.record.chunks] == ["profile:1", "profile:2"]
        assert result.record.private_seed == b"seed"
        assert result.sequence == 1

    def test_round_trip_via_submit_record(
        self,
        assembler: RecordAssembler,
        keypair: KeyPair,
    ) -> None:
        payload = bytes(range(256)) * 8
        put = assembler.submit_record(keypair, "blob", payload, last_sequence=9)
        assert put.ok
        assert put.sequence == 10

        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "blob")
        assert result.found
        assert result.record is not None
        assert result.record.value == payload
        assert result.sequence == 10

    def test_header_only_record(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        keypair: KeyPair,
    ) -> None:
        assert assembler.submit_record(keypair, "empty", b"").ok
        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "empty")
        assert result.found
        assert result.record is not None
        assert result.record.chunks == ()
        assert _salts_for(engine, keypair) == ["empty:0"]

    def test_missing_header_never_fetches_chunks(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        keypair: KeyPair,
    ) -> None:
        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "profile")
        assert not result.found
        # One attempt plus three retries, all on the header salt
        assert _salts_for(engine, keypair) == ["profile:0"] * 4

    def test_header_retry_succeeds(
        self,
        assembler: RecordAssembler,
        put_coordinator: PutCoordinator,
        engine: LoopbackEngine,
        keypair: KeyPair,
    ) -> None:
        _publish(put_coordinator, keypair, "profile", b"AABB")
        engine.drop_lookups["profile:0"] = 2
        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "profile")
        assert result.found
        salts = _salts_for(engine, keypair)
        assert salts == ["profile:0"] * 3 + ["profile:1", "profile:2"]

    def test_unparsable_header_is_not_found(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        keypair: KeyPair,
    ) -> None:
        engine.store(keypair, "profile:0", b"\xc1 not a header")
        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "profile")
        assert not result.found
        assert "profile:1" not in _salts_for(engine, keypair)

    def test_missing_chunk_aborts_whole_fetch(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        keypair: KeyPair,
    ) -> None:
        engine.store(keypair, "op:0", RecordHeader("op", 3).encode())
        engine.store(keypair, "op:1", b"A")
        engine.store(keypair, "op:3", b"C")
        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "op")
        assert not result.found
        assert result.record is None
        assert result.error is ErrorKind.NOT_FOUND
        # Stops at the first missing chunk
        assert "op:3" not in _salts_for(engine, keypair)

    def test_chunk_from_older_sequence_rejected(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        keypair: KeyPair,
    ) -> None:
        engine.store(keypair, "op:0", RecordHeader("op", 1).encode(), sequence=2)
        engine.store(keypair, "op:1", b"A", sequence=1)
        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "op")
        assert not result.found
        assert result.error is ErrorKind.MALFORMED_RECORD

    def test_digest_mismatch_rejected(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        keypair: KeyPair,
    ) -> None:
        header = DataRecord.create("op", b"AB", max_chunk_size=1).header
        engine.store(keypair, "op:0", header.encode())
        engine.store(keypair, "op:1", b"A")
        engine.store(keypair, "op:2", b"X")
        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "op")
        assert not result.found
        assert result.error is ErrorKind.MALFORMED_RECORD

    def test_too_many_chunks_rejected(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        keypair: KeyPair,
    ) -> None:
        engine.store(keypair, "op:0", RecordHeader("op", 500).encode())
        result = assembler.fetch_record(keypair.public_key_bytes(), b"", "op")
        assert result.error is ErrorKind.MALFORMED_RECORD
        assert _salts_for(engine, keypair) == ["op:0"]


@pytest.fixture
def peers(put_coordinator: PutCoordinator) -> list[tuple[KeyPair, PeerLink]]:
    result = []
    for name, value in (("alice", b"AABB"), ("bob", b"CCDDEE")):
        pair = KeyPair.generate()
        _publish(put_coordinator, pair, "profile", value)
        result.append(
            (pair, PeerLink(pair.public_key_bytes(), name.encode(), f"peers/{name}"))
        )
    return result


class TestFetchAllSync:
    def test_all_found_with_owner(
        self, assembler: RecordAssembler, peers: list[tuple[KeyPair, PeerLink]]
    ) -> None:
        batch = assembler.fetch_all_sync([link for _, link in peers], "profile")
        assert [r.owner_path for r in batch.records] == ["peers/alice", "peers/bob"]
        assert [r.value for r in batch.records] == [b"AABB", b"CCDDEE"]
        assert batch.errors == []

    def test_failing_peer_skipped(
        self, assembler: RecordAssembler, peers: list[tuple[KeyPair, PeerLink]]
    ) -> None:
        ghost = PeerLink(KeyPair.generate().public_key_bytes(), b"", "peers/ghost")
        links = [peers[0][1], ghost, peers[1][1]]
        batch = assembler.fetch_all_sync(links, "profile")
        assert [r.owner_path for r in batch.records] == ["peers/alice", "peers/bob"]
        assert len(batch.errors) == 1
        assert batch.errors[0].startswith("peers/ghost")


class TestFetchAllAsync:
    def test_all_found(
        self, assembler: RecordAssembler, peers: list[tuple[KeyPair, PeerLink]]
    ) -> None:
        batch = assembler.fetch_all_async([link for _, link in peers], "profile")
        assert sorted(r.owner_path for r in batch.records) == [
            "peers/alice",
            "peers/bob",
        ]
        by_owner = {r.owner_path: r for r in batch.records}
        assert by_owner["peers/alice"].value == b"AABB"
        assert by_owner["peers/bob"].value == b"CCDDEE"
        assert by_owner["peers/bob"].private_seed == b"bob"
        assert batch.error_text == ""

    def test_peer_without_header_skipped_without_chunk_lookups(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        peers: list[tuple[KeyPair, PeerLink]],
    ) -> None:
        ghost_pair = KeyPair.generate()
        ghost = PeerLink(ghost_pair.public_key_bytes(), b"", "peers/ghost")
        batch = assembler.fetch_all_async([peers[0][1], ghost], "profile")
        assert [r.owner_path for r in batch.records] == ["peers/alice"]
        assert "peers/ghost: no header" in batch.error_text
        assert _salts_for(engine, ghost_pair) == ["profile:0"]

    def test_missing_chunk_falls_back_then_skips(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        peers: list[tuple[KeyPair, PeerLink]],
    ) -> None:
        broken = KeyPair.generate()
        engine.store(broken, "profile:0", RecordHeader("profile", 2).encode())
        engine.store(broken, "profile:1", b"XX")
        link = PeerLink(broken.public_key_bytes(), b"", "peers/broken")

        batch = assembler.fetch_all_async([peers[0][1], link, peers[1][1]], "profile")
        owners = sorted(r.owner_path for r in batch.records)
        assert owners == ["peers/alice", "peers/bob"]
        assert "peers/broken: missing chunk 'profile:2'" in batch.error_text
        # Pipelined lookup plus one synchronous fallback for the missing chunk
        assert _salts_for(engine, broken).count("profile:2") == 2

    def test_slow_chunk_recovered_by_fallback(
        self,
        assembler: RecordAssembler,
        engine: LoopbackEngine,
        peers: list[tuple[KeyPair, PeerLink]],
    ) -> None:
        alice, alice_link = peers[0]
        # First pipelined lookup of "profile:1" goes unanswered
        engine.drop_lookups["profile:1"] = 1
        batch = assembler.fetch_all_async([alice_link], "profile")
        assert [r.value for r in batch.records] == [b"AABB"]
        assert batch.errors == []
        assert _salts_for(engine, alice).count("profile:1") == 2

    def test_empty_batch(self, assembler: RecordAssembler) -> None:
        batch = assembler.fetch_all_async([], "profile")
        assert batch.records == []
        assert batch.errors == []
