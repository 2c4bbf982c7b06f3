"""
Deterministic SHA-256 helpers for sender identity.

Sender ids are derived from the normalized address only, so the same
sender maps to the same id across sessions, restarts and snapshots.
"""

from __future__ import annotations

import hashlib
from email.utils import parseaddr
from typing import Iterable

SENDER_ID_PREFIX = "snd_"
SENDER_ID_LENGTH = 24

__all__ = [
    "compute_digest",
    "normalize_address",
    "extract_domain",
    "sender_id",
    "sender_ids",
]


def compute_digest(value: str, *, namespace: str) -> str:
    """
    Compute a namespaced hex SHA-256 digest.

    Args:
        value: Raw string value to hash (will be normalized by caller).
        namespace: Logical namespace to avoid cross-field collisions.
    """
    payload = value or ""
    scoped = f"{namespace}:{payload}"
    return hashlib.sha256(scoped.encode("utf-8")).hexdigest()


def normalize_address(address: str | None) -> str:
    """
    Reduce a From header or bare address to a lower-case ``local@domain``.

    Handles formats like ``"Jane Doe" <Jane@Example.COM>`` and returns an
    empty string when no address can be recovered.
    """
    if not address:
        return ""
    _, addr = parseaddr(address)
    addr = (addr or address).strip().strip("<>").strip()
    if "@" not in addr:
        return addr.lower()
    local, _, domain = addr.rpartition("@")
    return f"{local.lower()}@{domain.lower().rstrip('.')}"


def extract_domain(address: str | None) -> str:
    normalized = normalize_address(address)
    if "@" not in normalized:
        return ""
    return normalized.rpartition("@")[2]


def sender_id(address: str | None) -> str:
    """Deterministically derive the sender id for an address."""
    digest = compute_digest(normalize_address(address), namespace="sender")
    return f"{SENDER_ID_PREFIX}{digest[:SENDER_ID_LENGTH]}"


def sender_ids(addresses: Iterable[str | None]) -> list[str]:
    """
    Derive sender ids for a collection of addresses while preserving input order.
    """
    return [sender_id(address) for address in addresses]
