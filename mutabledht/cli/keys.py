"""CLI commands: keys generate, keys show."""

from __future__ import annotations

import json

import click

from mutabledht.config import load_config
from mutabledht.keys import KeyPair, ensure_keys


@click.group("keys")
def keys_group() -> None:
    """Ed25519 key management."""


@keys_group.command("generate")
def keys_generate() -> None:
    """Generate a fresh key pair for a new mutable-item namespace."""
    pair = KeyPair.generate()
    click.echo(
        json.dumps(
            {"public_key": pair.public_key_hex, "private_key": pair.private_key_hex},
            indent=2,
        )
    )


@keys_group.command("show")
def keys_show() -> None:
    """Show the node's own public key, creating it on first use."""
    config = load_config()
    pair = ensure_keys(config.node.data_dir)
    click.echo(
        json.dumps(
            {"public_key": pair.public_key_hex, "fingerprint": pair.fingerprint},
            indent=2,
        )
    )
