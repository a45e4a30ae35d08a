"""CLI commands: get-mutable, put-mutable."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import NoReturn

import click
import structlog

from mutabledht.config import Config, load_config
from mutabledht.engine import load_engine_factory
from mutabledht.errors import DHTOperationError, ErrorKind, get_error
from mutabledht.rpc import DHTService, get_mutable, put_mutable
from mutabledht.store import MutableDataStore

logger = structlog.get_logger()


def _echo_json(data: dict[str, object]) -> None:
    click.echo(json.dumps(data, indent=2))


def _fail(kind: ErrorKind, message: str) -> NoReturn:
    err = get_error(kind)
    payload = err.to_dict() if err else {"error": {"kind": str(kind)}}
    payload["error"]["message"] = message  # type: ignore[index]
    _echo_json(payload)
    raise SystemExit(1)


def _open_service(config: Config) -> DHTService:
    if not config.session.engine_factory:
        _fail(
            ErrorKind.ENGINE_UNAVAILABLE,
            "No engine configured; set session.engine_factory in config.toml",
        )
    try:
        factory = load_engine_factory(config.session.engine_factory)
    except (ValueError, ImportError, AttributeError) as exc:
        _fail(ErrorKind.ENGINE_UNAVAILABLE, f"Cannot load engine factory: {exc}")
    return DHTService.create(
        config, factory, store=MutableDataStore(config.node.data_dir)
    )


def _run(operation: Callable[[DHTService], dict[str, object]]) -> None:
    config = load_config()
    service = _open_service(config)
    try:
        if not service.start(timeout=config.session.bootstrap_timeout * 2):
            reason = service.session.last_error or "session did not reach running"
            _fail(ErrorKind.ENGINE_UNAVAILABLE, reason)
        _echo_json(operation(service))
    except DHTOperationError as exc:
        _echo_json(exc.to_dict())
        raise SystemExit(1) from None
    finally:
        service.close()


@click.command("get-mutable")
@click.argument("pubkey")
@click.argument("salt")
def get_mutable_cmd(pubkey: str, salt: str) -> None:
    """Fetch a mutable item by public key (hex) and salt."""
    _run(lambda service: get_mutable(service, pubkey, salt))


@click.command("put-mutable")
@click.argument("value")
@click.argument("salt")
@click.option("--pubkey", default=None, help="Existing public key (hex).")
@click.option("--privkey", default=None, help="Matching private key (hex).")
def put_mutable_cmd(
    value: str, salt: str, pubkey: str | None, privkey: str | None
) -> None:
    """Store a mutable item; new keys are generated when none are given."""
    if (pubkey is None) != (privkey is None):
        _fail(
            ErrorKind.INVALID_ARGUMENT,
            "Supply both --pubkey and --privkey, or neither",
        )
    _run(lambda service: put_mutable(service, value, salt, pubkey, privkey))
