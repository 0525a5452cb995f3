"""Address normalization helpers."""

from __future__ import annotations

from typing import Any

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup."""
    return str(value or "").strip().lower()


def is_zero_address(value: str | None) -> bool:
    return normalize_address(value) in {"", ZERO_ADDRESS}


def hex_text(value: Any) -> str:
    """Lowercase hex without the 0x prefix for HexBytes, bytes or str payloads."""
    if value is None:
        return ""
    raw = value.hex() if hasattr(value, "hex") else str(value)
    clean = raw.strip().lower()
    if clean.startswith("0x"):
        clean = clean[2:]
    return clean
