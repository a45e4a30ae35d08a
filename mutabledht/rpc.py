"""get-mutable / put-mutable: the externally visible DHT operations.

These are thin synchronous wrappers over the coordinators.  Unlike the
coordinators they raise :class:`DHTOperationError` on failure, and they
return plain dicts ready for JSON output.

Usage::

    service = DHTService.create(config, engine_factory)
    service.start(timeout=60)
    created = put_mutable(service, "hello", "greeting")
    item = get_mutable(service, created["public_key"], "greeting")
    service.close()
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from mutabledht.assembler import RecordAssembler
from mutabledht.config import Config
from mutabledht.engine import EngineFactory, ReadinessProbe
from mutabledht.errors import DHTOperationError, ErrorKind
from mutabledht.get import GetCoordinator
from mutabledht.hashing import info_hash
from mutabledht.keys import PUBLIC_KEY_SIZE, KeyPair
from mutabledht.put import PutCoordinator
from mutabledht.session import SessionManager
from mutabledht.store import MutableDataStore, StoredItem

logger = structlog.get_logger()


@dataclass
class DHTService:
    """Everything one process needs to talk to the DHT."""

    config: Config
    session: SessionManager
    put: PutCoordinator
    get: GetCoordinator
    assembler: RecordAssembler
    store: MutableDataStore | None = None

    @classmethod
    def create(
        cls,
        config: Config,
        engine_factory: EngineFactory,
        *,
        readiness: ReadinessProbe | None = None,
        store: MutableDataStore | None = None,
    ) -> DHTService:
        session = SessionManager(config, engine_factory, readiness=readiness)
        put = PutCoordinator(session, config)
        get = GetCoordinator(session, config)
        return cls(
            config=config,
            session=session,
            put=put,
            get=get,
            assembler=RecordAssembler(get, put, config),
            store=store,
        )

    def start(self, timeout: float | None = None) -> bool:
        """Start the session and wait until it is running."""
        self.session.start()
        return self.session.wait_until_running(timeout)

    def close(self) -> None:
        self.session.stop()
        if self.store is not None:
            self.store.close()


def _parse_public_key(pubkey_hex: str) -> bytes:
    try:
        public_key = bytes.fromhex(pubkey_hex)
    except ValueError as exc:
        raise DHTOperationError(
            ErrorKind.INVALID_ARGUMENT, f"public key is not valid hex: {exc}"
        ) from None
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise DHTOperationError(
            ErrorKind.INVALID_ARGUMENT,
            f"public key must be {PUBLIC_KEY_SIZE} bytes",
        )
    return public_key


def _text(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


def get_mutable(
    service: DHTService, pubkey_hex: str, salt: str
) -> dict[str, object]:
    """Fetch one mutable item.

    Returns:
        ``{"public_key", "salt", "sequence", "value"}``.

    Raises:
        DHTOperationError: If no result was obtained.
    """
    public_key = _parse_public_key(pubkey_hex)
    result = service.get.submit_get(
        public_key, salt, timeout=service.config.records.rpc_get_timeout
    )
    if not result.ok:
        raise DHTOperationError(result.error or ErrorKind.NOT_FOUND, result.message)
    return {
        "public_key": pubkey_hex,
        "salt": salt,
        "sequence": result.sequence,
        "value": _text(result.value),
    }


def put_mutable(
    service: DHTService,
    value: str | bytes,
    salt: str,
    pubkey_hex: str | None = None,
    privkey_hex: str | None = None,
) -> dict[str, object]:
    """Publish one mutable item and wait for the put acknowledgement.

    Without keys a fresh key pair is generated and returned, private key
    included.  With keys the current sequence is read authoritatively
    first; an authoritative empty answer (sequence 0) starts a new item,
    while a failed read fails the call so the sequence never regresses.

    Returns:
        ``{"public_key", "private_key", "salt", "sequence", "value",
        "message"}``.

    Raises:
        DHTOperationError: On invalid arguments, a failed sequence read,
            a failed put, a missing acknowledgement for this sequence, or
            an acknowledgement with zero successes.
    """
    if (pubkey_hex is None) != (privkey_hex is None):
        raise DHTOperationError(
            ErrorKind.INVALID_ARGUMENT,
            "Supply both the public and private key, or neither",
        )
    payload = value.encode("utf-8") if isinstance(value, str) else value
    records = service.config.records
    if len(payload) > records.max_chunk_size:
        raise DHTOperationError(
            ErrorKind.INVALID_ARGUMENT,
            f"value is {len(payload)} bytes, limit is {records.max_chunk_size}",
        )

    last_sequence = 0
    if pubkey_hex is None or privkey_hex is None:
        keypair = KeyPair.generate()
    else:
        try:
            keypair = KeyPair.from_hex(pubkey_hex, privkey_hex)
        except ValueError as exc:
            raise DHTOperationError(ErrorKind.INVALID_ARGUMENT, str(exc)) from None
        current = service.get.get_authoritative(
            keypair.public_key_bytes(), salt, timeout=records.rpc_get_timeout
        )
        if not current.ok:
            raise DHTOperationError(
                current.error or ErrorKind.NOT_FOUND,
                "Get failed, cannot determine the current sequence: "
                f"{current.message}",
            )
        last_sequence = current.sequence
        if last_sequence == 0:
            logger.info("put_mutable_new_item", salt=salt)

    public_key = keypair.public_key_bytes()
    issued = service.put.put_item(
        public_key, keypair.private_key_bytes(), salt, payload, last_sequence
    )
    if not issued.ok:
        raise DHTOperationError(issued.error or ErrorKind.NOT_FOUND, issued.message)

    ack = service.session.correlator.wait_for_put(
        info_hash(public_key, salt),
        issued.issued_at,
        records.put_ack_timeout,
        sequence=issued.sequence,
    )
    if ack is None:
        raise DHTOperationError(
            ErrorKind.TIMEOUT,
            f"No put acknowledgement within {records.put_ack_timeout:g}s",
        )
    if ack.num_success == 0:
        raise DHTOperationError(
            ErrorKind.PUT_NOT_ACKNOWLEDGED,
            ack.message or "Put succeeded on 0 nodes",
        )

    if service.store is not None:
        service.store.put(
            StoredItem.create(
                public_key,
                salt,
                payload,
                issued.sequence,
                keypair.sign_item(payload, salt, issued.sequence),
            )
        )

    message = ack.message or f"Put succeeded on {ack.num_success} nodes"
    logger.info(
        "put_mutable_complete",
        salt=salt,
        sequence=issued.sequence,
        num_success=ack.num_success,
    )
    return {
        "public_key": keypair.public_key_hex,
        "private_key": keypair.private_key_hex,
        "salt": salt,
        "sequence": issued.sequence,
        "value": _text(payload),
        "message": message,
    }
