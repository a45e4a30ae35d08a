"""Ed25519 key pairs and mutable-item signing.

Mutable items are authenticated by an Ed25519 signature over a canonical
bencode-style buffer covering salt, sequence number and value::

    4:salt<len>:<salt>3:seqi<seq>e1:v<len>:<value>

Signing is a pure function of its inputs; the Put Coordinator composes it
with ``functools.partial`` and hands the result to the engine as the item
signer.

Keys are exchanged as hex: a 32-byte public key and a 32-byte private
seed.
"""

from __future__ import annotations

import os
import secrets
import stat
from dataclasses import dataclass
from pathlib import Path

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

from mutabledht.hashing import short_hash

logger = structlog.get_logger()

PUBLIC_KEY_SIZE = 32
PRIVATE_KEY_SIZE = 32
SEED_SIZE = 32


@dataclass(frozen=True)
class SignedItem:
    """Everything the engine needs to store one mutable item."""

    salt: str
    value: bytes
    sequence: int
    signature: bytes
    public_key: bytes


def signing_buffer(value: bytes, salt: str, sequence: int) -> bytes:
    """Build the canonical byte string covered by an item signature."""
    salt_bytes = salt.encode("utf-8")
    buf = b""
    if salt_bytes:
        buf += b"4:salt%d:" % len(salt_bytes) + salt_bytes
    buf += b"3:seqi%de1:v" % sequence
    buf += b"%d:" % len(value) + value
    return buf


def sign_mutable_item(
    value: bytes,
    salt: str,
    sequence: int,
    public_key: bytes,
    private_key: bytes,
) -> bytes:
    """Sign one mutable item.

    Args:
        value: Item payload.
        salt: Item salt.
        sequence: Sequence number the item is published under.
        public_key: Raw 32-byte Ed25519 public key.
        private_key: Raw 32-byte Ed25519 private seed.

    Returns:
        64-byte Ed25519 signature.

    Raises:
        ValueError: If the key sizes are wrong or *public_key* does not
            belong to *private_key*.
    """
    if len(public_key) != PUBLIC_KEY_SIZE or len(private_key) != PRIVATE_KEY_SIZE:
        msg = "public and private keys must be 32 bytes each"
        raise ValueError(msg)
    signer = Ed25519PrivateKey.from_private_bytes(private_key)
    derived = signer.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    if derived != public_key:
        msg = "public key does not match private key"
        raise ValueError(msg)
    return signer.sign(signing_buffer(value, salt, sequence))


def verify_mutable_item(
    value: bytes,
    salt: str,
    sequence: int,
    public_key: bytes,
    signature: bytes,
) -> bool:
    """Return ``True`` if *signature* is valid for the item."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(
            signature, signing_buffer(value, salt, sequence)
        )
        return True
    except (InvalidSignature, ValueError):
        return False


def make_signed_item(
    value: bytes,
    salt: str,
    *,
    sequence: int,
    public_key: bytes,
    private_key: bytes,
) -> SignedItem:
    """Sign *value* for *salt* and package it for the engine."""
    signature = sign_mutable_item(value, salt, sequence, public_key, private_key)
    return SignedItem(
        salt=salt,
        value=value,
        sequence=sequence,
        signature=signature,
        public_key=public_key,
    )


def generate_private_seed() -> bytes:
    """Random 32-byte seed bound to records for downstream decryption."""
    return secrets.token_bytes(SEED_SIZE)


class KeyPair:
    """Ed25519 key pair owning a mutable-item namespace.

    Usage:
        keys = KeyPair.generate()
        keys.public_key_hex, keys.private_key_hex

        # Later:
        keys = KeyPair.from_hex(pub_hex, priv_hex)
    """

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_key = private_key.public_key()

    @classmethod
    def generate(cls) -> KeyPair:
        """Generate a new Ed25519 key pair."""
        pair = cls(Ed25519PrivateKey.generate())
        logger.info("keypair_generated", fingerprint=pair.fingerprint)
        return pair

    @classmethod
    def from_private_bytes(cls, private_key: bytes) -> KeyPair:
        if len(private_key) != PRIVATE_KEY_SIZE:
            msg = f"private key must be {PRIVATE_KEY_SIZE} bytes"
            raise ValueError(msg)
        return cls(Ed25519PrivateKey.from_private_bytes(private_key))

    @classmethod
    def from_hex(cls, public_key_hex: str, private_key_hex: str) -> KeyPair:
        """Load a key pair from hex strings, checking they belong together.

        Raises:
            ValueError: On malformed hex or mismatched keys.
        """
        pair = cls.from_private_bytes(bytes.fromhex(private_key_hex))
        if pair.public_key_bytes() != bytes.fromhex(public_key_hex):
            msg = "public key does not match private key"
            raise ValueError(msg)
        return pair

    @classmethod
    def load(cls, keys_dir: Path) -> KeyPair:
        """Load key pair from ``private.pem`` in *keys_dir*.

        Raises:
            FileNotFoundError: If the key file doesn't exist.
        """
        private_path = keys_dir / "private.pem"
        if not private_path.exists():
            msg = f"Private key not found: {private_path}"
            raise FileNotFoundError(msg)

        private_key = load_pem_private_key(private_path.read_bytes(), password=None)
        if not isinstance(private_key, Ed25519PrivateKey):
            msg = f"Not an Ed25519 key: {private_path}"
            raise ValueError(msg)
        logger.info("keypair_loaded", keys_dir=str(keys_dir))
        return cls(private_key)

    def save(self, keys_dir: Path) -> None:
        """Save the private key as PEM with owner-only permissions."""
        keys_dir.mkdir(parents=True, exist_ok=True)
        private_path = keys_dir / "private.pem"
        private_path.write_bytes(
            self._private_key.private_bytes(
                encoding=Encoding.PEM,
                format=PrivateFormat.PKCS8,
                encryption_algorithm=NoEncryption(),
            )
        )
        os.chmod(private_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600
        logger.info("keypair_saved", keys_dir=str(keys_dir))

    def public_key_bytes(self) -> bytes:
        """Raw 32-byte public key."""
        return self._public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)

    def private_key_bytes(self) -> bytes:
        """Raw 32-byte private seed."""
        return self._private_key.private_bytes(
            Encoding.Raw, PrivateFormat.Raw, NoEncryption()
        )

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes().hex()

    @property
    def private_key_hex(self) -> str:
        return self.private_key_bytes().hex()

    @property
    def fingerprint(self) -> str:
        """Short fingerprint for logging."""
        return short_hash(self.public_key_bytes())

    def sign_item(self, value: bytes, salt: str, sequence: int) -> bytes:
        return sign_mutable_item(
            value, salt, sequence, self.public_key_bytes(), self.private_key_bytes()
        )


def ensure_keys(data_dir: Path) -> KeyPair:
    """Load existing keys or generate new ones on first run."""
    keys_dir = data_dir / "keys"

    if (keys_dir / "private.pem").exists():
        return KeyPair.load(keys_dir)

    logger.info("first_run_keygen", keys_dir=str(keys_dir))
    pair = KeyPair.generate()
    pair.save(keys_dir)
    return pair
