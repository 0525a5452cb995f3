"""Lifecycle telemetry: JSONL event sink plus aggregate counters."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any

import config
from utils.log_contracts import lifecycle_event

logger = logging.getLogger(__name__)

LIFECYCLE_KINDS = {"discovered", "entry", "partial_exit", "full_exit", "removal", "error"}


@dataclass
class LifecycleStats:
    tokens_monitored: int = 0
    tokens_traded: int = 0
    total_trades: int = 0
    successful_buys: int = 0
    successful_sells: int = 0
    failed_buys: int = 0
    failed_sells: int = 0
    total_profit_usd: float = 0.0
    errors: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class TelemetrySink:
    """Records lifecycle events for an external reporting layer.

    Events are appended to a JSONL file when `events_file` is set and kept in
    a small in-memory tail otherwise, so tests and the status reporter can
    inspect them without touching disk.
    """

    def __init__(self, events_file: str | None = None, run_tag: str | None = None, keep_last: int = 500) -> None:
        self.events_file = events_file
        self.run_tag = str(config.RUN_TAG if run_tag is None else run_tag)
        self.keep_last = max(1, int(keep_last))
        self.stats = LifecycleStats()
        self.recent: list[dict[str, Any]] = []
        if self.events_file:
            directory = os.path.dirname(os.path.abspath(self.events_file))
            os.makedirs(directory, exist_ok=True)

    def emit(self, kind: str, token_address: str = "", reason: str = "", **fields: Any) -> dict[str, Any]:
        if kind not in LIFECYCLE_KINDS:
            raise ValueError(f"unknown lifecycle event kind: {kind}")
        if kind == "error":
            self.stats.errors += 1
        record = lifecycle_event(
            {"kind": kind, "token_address": token_address, "reason": reason, **fields},
            run_tag=self.run_tag,
        )
        self.recent.append(record)
        if len(self.recent) > self.keep_last:
            del self.recent[: len(self.recent) - self.keep_last]
        if self.events_file:
            try:
                with open(self.events_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
            except OSError as exc:
                logger.warning("TELEMETRY_WRITE_FAILED file=%s error=%s", self.events_file, exc)
        return record

    def events(self, kind: str | None = None) -> list[dict[str, Any]]:
        if kind is None:
            return list(self.recent)
        return [row for row in self.recent if row.get("kind") == kind]
