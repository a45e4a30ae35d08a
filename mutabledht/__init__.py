"""mutabledht: chunked, signed mutable records over a Kademlia DHT overlay."""

from __future__ import annotations

__version__ = "0.1.0"
