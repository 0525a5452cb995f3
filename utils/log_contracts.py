"""Lifecycle event contract: schema stamping, trace ids and reason codes."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_TOKEN_LIFECYCLE = "token_lifecycle.v1"

_KIND_PREFIX: dict[str, str] = {
    "discovered": "DISCOVER",
    "entry": "EXEC",
    "partial_exit": "EXIT",
    "full_exit": "EXIT",
    "removal": "REMOVE",
    "error": "ERROR",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "buy_paper": "EXEC_BUY_PAPER",
    "buy_live": "EXEC_BUY_LIVE",
    "buy_fail": "EXEC_BUY_FAIL",
    "sell_fail": "EXEC_SELL_FAIL",
    "first_sell": "EXIT_FIRST_THRESHOLD",
    "second_sell": "EXIT_SECOND_THRESHOLD",
    "stop_loss_peak": "EXIT_STOP_LOSS_PEAK",
    "stagnation": "EXIT_STAGNATION",
    "inactive": "REMOVE_INACTIVE",
    "post_trade": "REMOVE_POST_TRADE",
    "low_price": "REMOVE_LOW_PRICE",
    "manual": "REMOVE_MANUAL",
    "pattern_match": "DISCOVER_PATTERN_MATCH",
    "trade_cap": "POLICY_TRADE_CAP",
    "kill_switch_active": "POLICY_KILL_SWITCH_ACTIVE",
    "hourly_cap": "POLICY_HOURLY_CAP",
    "daily_cap": "POLICY_DAILY_CAP",
    "migrated_or_unsupported": "EXEC_MIGRATED",
    "no_funded_resource": "EXEC_NO_FUNDED_WALLET",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "DISCOVER_PATTERN_MATCH": {"severity": "INFO", "category": "discover", "title": "Token matched a pattern"},
    "EXEC_BUY_PAPER": {"severity": "INFO", "category": "execute", "title": "Paper buy opened"},
    "EXEC_BUY_LIVE": {"severity": "INFO", "category": "execute", "title": "Live buy opened"},
    "EXEC_BUY_FAIL": {"severity": "WARN", "category": "execute", "title": "Buy failed"},
    "EXEC_SELL_FAIL": {"severity": "WARN", "category": "execute", "title": "Sell failed"},
    "EXEC_MIGRATED": {"severity": "WARN", "category": "execute", "title": "Token left the launch platform"},
    "EXEC_NO_FUNDED_WALLET": {"severity": "WARN", "category": "execute", "title": "No funded wallet or balance"},
    "EXIT_FIRST_THRESHOLD": {"severity": "INFO", "category": "exit", "title": "Half sold at first threshold"},
    "EXIT_SECOND_THRESHOLD": {"severity": "INFO", "category": "exit", "title": "Closed at second threshold"},
    "EXIT_STOP_LOSS_PEAK": {"severity": "WARN", "category": "exit", "title": "Closed by stop loss from peak"},
    "EXIT_STAGNATION": {"severity": "INFO", "category": "exit", "title": "Closed by price stagnation"},
    "REMOVE_INACTIVE": {"severity": "INFO", "category": "remove", "title": "No price update within timeout"},
    "REMOVE_POST_TRADE": {"severity": "INFO", "category": "remove", "title": "Trading finished for token"},
    "REMOVE_LOW_PRICE": {"severity": "INFO", "category": "remove", "title": "Price stayed below floor"},
    "REMOVE_MANUAL": {"severity": "INFO", "category": "remove", "title": "Removed by operator"},
    "POLICY_TRADE_CAP": {"severity": "INFO", "category": "policy", "title": "Per-token trade cap reached"},
    "POLICY_KILL_SWITCH_ACTIVE": {"severity": "WARN", "category": "policy", "title": "Emergency stop active"},
    "POLICY_HOURLY_CAP": {"severity": "WARN", "category": "policy", "title": "Hourly trade cap reached"},
    "POLICY_DAILY_CAP": {"severity": "WARN", "category": "policy", "title": "Daily trade cap reached"},
}

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def _slug(value: Any) -> str:
    return re.sub(r"[^a-z0-9]+", "_", str(value or "").lower()).strip("_")


def _code_part(value: Any) -> str:
    return _slug(value).upper() or "UNKNOWN"


def _token_key(value: Any) -> str:
    address = str(value or "").strip().lower()
    return address if _ADDRESS_RE.match(address) else ""


def _short_hash(*parts: Any) -> str:
    return hashlib.sha1("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()[:20]


def reason_code_for_event(*, reason: Any, kind: Any = "") -> str:
    """Map an event reason to its stable code: the override table first, else KIND_REASON."""
    reason_slug = _slug(reason)
    kind_slug = _slug(kind)
    prefix = _KIND_PREFIX.get(kind_slug or "unknown", "UNKNOWN")
    if not reason_slug:
        return f"{prefix}_{_code_part(kind_slug)}" if kind_slug else "UNKNOWN"
    return _REASON_CODE_OVERRIDES.get(reason_slug) or f"{prefix}_{_code_part(reason_slug)}"


def reason_code_meta(code: str, *, kind: Any = "") -> dict[str, str]:
    key = _code_part(code)
    known = REASON_CODE_TAXONOMY.get(key)
    if known is not None:
        return dict(known)
    kind_slug = _slug(kind)
    return {
        "severity": "WARN" if kind_slug == "error" else "INFO",
        "category": kind_slug or "unknown",
        "title": key.replace("_", " ").capitalize(),
    }


def stamp_event(
    event: dict[str, Any],
    *,
    schema_name: str,
    event_type: str,
    run_tag: str = "",
) -> dict[str, Any]:
    """Add schema, time, trace and decision identifiers to a copy of `event`.

    Events about one token share a trace per trade cycle, so an entry and the
    exits of that position can be joined downstream.
    """
    row = dict(event or {})
    ts = row.get("ts")
    ts = float(ts) if isinstance(ts, (int, float)) else datetime.now(timezone.utc).timestamp()
    row["ts"] = ts
    row.setdefault("timestamp", datetime.fromtimestamp(ts, tz=timezone.utc).isoformat())
    row.setdefault("schema_version", LOG_SCHEMA_VERSION)
    row.setdefault("schema_name", schema_name)
    row.setdefault("event_type", event_type or "event")
    if run_tag:
        row.setdefault("run_tag", run_tag)

    token = _token_key(row.get("token_address"))
    if not row.get("trace_id"):
        if token:
            row["trace_id"] = "tr_" + _short_hash(token, row.get("trade_cycle", 0))
        else:
            row["trace_id"] = "tr_" + _short_hash(row.get("kind", ""), f"{ts:.6f}")
    if not row.get("decision_id"):
        row["decision_id"] = "dec_" + _short_hash(
            row.get("run_tag", ""), row["trace_id"], row.get("kind", ""), row.get("reason", ""), token, f"{ts:.6f}"
        )
    return row


def lifecycle_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    row = stamp_event(
        event,
        schema_name=SCHEMA_TOKEN_LIFECYCLE,
        event_type=str((event or {}).get("event_type") or "token_lifecycle"),
        run_tag=run_tag,
    )
    kind = _slug(row.get("kind")) or "unknown"
    row["kind"] = kind
    row["reason"] = str(row.get("reason") or "")
    row["matched_pattern"] = str(row.get("matched_pattern") or "")
    try:
        row["price_usd"] = float(row.get("price_usd") or 0.0)
    except (TypeError, ValueError):
        row["price_usd"] = 0.0
    code = str(row.get("reason_code") or reason_code_for_event(reason=row["reason"], kind=kind)).upper()
    meta = reason_code_meta(code, kind=kind)
    row["reason_code"] = code
    row.setdefault("reason_severity", meta["severity"])
    row.setdefault("reason_category", meta["category"])
    row["token_address"] = _token_key(row.get("token_address"))
    return row
