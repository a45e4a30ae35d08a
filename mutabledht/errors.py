"""Structured error kinds and the error catalog.

Coordinator calls report failures as an :class:`ErrorKind` inside their
result objects.  Only the outer RPC surface raises, via
:class:`DHTOperationError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    """Failure classification shared by every coordinator."""

    ENGINE_UNAVAILABLE = "engine_unavailable"
    LOCKED = "locked"
    TIMEOUT = "timeout"
    MALFORMED_RECORD = "malformed_record"
    PUT_NOT_ACKNOWLEDGED = "put_not_acknowledged"
    NOT_FOUND = "not_found"
    INVALID_ARGUMENT = "invalid_argument"


@dataclass(frozen=True)
class DHTError:
    """Structured error with code, message, and resolution."""

    code: str
    kind: ErrorKind
    message: str
    resolution: str

    def to_dict(self) -> dict[str, object]:
        return {
            "error": {
                "code": self.code,
                "kind": self.kind.value,
                "message": self.message,
                "resolution": self.resolution,
            },
        }

    def format(self) -> str:
        return f"Error [{self.code}]: {self.message}\nResolution: {self.resolution}"


# ── Pre-defined error catalog ─────────────────────────────────────

ERRORS: dict[ErrorKind, DHTError] = {
    ErrorKind.ENGINE_UNAVAILABLE: DHTError(
        code="MUTABLEDHT_E001",
        kind=ErrorKind.ENGINE_UNAVAILABLE,
        message="DHT session is not started or could not be recovered",
        resolution=(
            "Wait for the session to reach the running state or check the "
            "bootstrap nodes in config.toml"
        ),
    ),
    ErrorKind.LOCKED: DHTError(
        code="MUTABLEDHT_E002",
        kind=ErrorKind.LOCKED,
        message="Record is locked by the put cooldown",
        resolution="Wait for the cooldown window to pass before updating again",
    ),
    ErrorKind.TIMEOUT: DHTError(
        code="MUTABLEDHT_E003",
        kind=ErrorKind.TIMEOUT,
        message="No result received before the deadline",
        resolution="Retry later or increase records.fetch_timeout",
    ),
    ErrorKind.MALFORMED_RECORD: DHTError(
        code="MUTABLEDHT_E004",
        kind=ErrorKind.MALFORMED_RECORD,
        message="Record header and chunks are inconsistent",
        resolution="Ask the record owner to resubmit the record",
    ),
    ErrorKind.PUT_NOT_ACKNOWLEDGED: DHTError(
        code="MUTABLEDHT_E005",
        kind=ErrorKind.PUT_NOT_ACKNOWLEDGED,
        message="No DHT node acknowledged the put",
        resolution="Check peer connectivity and resubmit after the cooldown",
    ),
    ErrorKind.NOT_FOUND: DHTError(
        code="MUTABLEDHT_E006",
        kind=ErrorKind.NOT_FOUND,
        message="Record not found",
        resolution="Verify the public key and operation type",
    ),
    ErrorKind.INVALID_ARGUMENT: DHTError(
        code="MUTABLEDHT_E007",
        kind=ErrorKind.INVALID_ARGUMENT,
        message="Invalid argument",
        resolution="Supply both the public and private key, or neither",
    ),
}


def get_error(kind: ErrorKind | str) -> DHTError | None:
    """Look up a catalog entry by kind."""
    try:
        return ERRORS.get(ErrorKind(kind))
    except ValueError:
        return None


def format_error(kind: ErrorKind | str) -> str:
    """Format a catalog error message by kind."""
    err = get_error(kind)
    if err is None:
        return f"Unknown error: {kind}"
    return err.format()


class DHTOperationError(Exception):
    """Raised by the RPC surface when a DHT operation fails.

    Carries the :class:`ErrorKind` and the coordinator's diagnostic text.
    """

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        self.kind = kind
        self.message = message or ERRORS[kind].message
        super().__init__(f"{kind.value}: {self.message}")

    def to_dict(self) -> dict[str, object]:
        data = ERRORS[self.kind].to_dict()
        data["error"]["message"] = self.message  # type: ignore[index]
        return data
