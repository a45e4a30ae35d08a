"""Structural contracts for the DHT overlay engine and node readiness.

The overlay engine (routing, node discovery, storage) is an external
collaborator.  This module only defines the Protocols the session and
coordinators depend on, plus helpers to resolve an engine factory from
configuration.

Engine threading contract: ``lookup`` and ``put`` return immediately;
results arrive later as alerts passed to the handler registered with
``set_alert_handler``, invoked on the engine's own thread.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from mutabledht.config import Config
    from mutabledht.keys import SignedItem

ItemSigner = Callable[[str], "SignedItem"]
AlertHandler = Callable[[object], None]


@runtime_checkable
class EngineHandle(Protocol):
    """Opaque DHT overlay session."""

    def lookup(self, public_key: bytes, salt: str) -> None:
        """Start an asynchronous mutable-item lookup."""
        ...

    def put(self, public_key: bytes, salt: str, signer: ItemSigner) -> None:
        """Start an asynchronous best-effort put.

        The engine calls ``signer(salt)`` to obtain the signed item.
        """
        ...

    def is_running(self) -> bool:
        """Return ``True`` while the DHT is operational."""
        ...

    def apply_settings(self, settings: dict[str, object]) -> None:
        """Apply engine settings (e.g. ``enable_dht``, ``alert_mask``)."""
        ...

    def abort(self) -> None:
        """Tear the engine down without waiting for in-flight requests."""
        ...

    def save_state(self) -> bytes:
        """Serialize engine-defined routing state."""
        ...

    def load_state(self, blob: bytes) -> None:
        """Restore state saved by ``save_state``.

        Must raise ``ValueError`` on unparsable input and leave the
        current state untouched in that case.
        """
        ...

    def set_alert_handler(self, handler: AlertHandler | None) -> None:
        """Register (or clear) the callback receiving engine alerts."""
        ...


EngineFactory = Callable[["Config"], EngineHandle | None]


@runtime_checkable
class ReadinessProbe(Protocol):
    """Conditions gating session startup."""

    def peer_count(self) -> int: ...  # noqa: D102

    def is_synced(self) -> bool: ...  # noqa: D102

    def is_feature_active(self) -> bool: ...  # noqa: D102


class AlwaysReady:
    """Readiness probe for standalone use: always ready."""

    def peer_count(self) -> int:
        return 1

    def is_synced(self) -> bool:
        return True

    def is_feature_active(self) -> bool:
        return True


def is_ready(probe: ReadinessProbe) -> bool:
    """Startup gate: peers connected, chain synced and feature active."""
    return probe.peer_count() > 0 and probe.is_synced() and probe.is_feature_active()


def load_engine_factory(spec: str) -> EngineFactory:
    """Resolve a ``"package.module:callable"`` string to an engine factory.

    Raises:
        ValueError: If *spec* is empty or malformed.
        ImportError: If the module cannot be imported.
        AttributeError: If the callable does not exist.
    """
    module_name, sep, attr = spec.partition(":")
    if not module_name or not sep or not attr:
        msg = (
            f"Invalid engine factory {spec!r}; expected 'package.module:callable'. "
            "Set session.engine_factory in config.toml."
        )
        raise ValueError(msg)
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    if not callable(factory):
        msg = f"Engine factory {spec!r} is not callable"
        raise ValueError(msg)
    return factory  # type: ignore[no-any-return]
