"""
Event Journal

Records market-maker events (lifecycle transitions, quotes, order
placements and failures, margin checks, status snapshots) to a JSONL file.

Each line is a self-contained JSON object with a ``type`` field plus the
run id and sequence number, so a run can be replayed or summarised after
the fact.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_DEFAULT_JOURNAL_DIR = Path("data/mm_journal")

# Event types that are fsynced immediately.
_CRITICAL_EVENT_TYPES = frozenset({"state_change", "run_end", "error"})


class _DecimalEncoder(json.JSONEncoder):
    """Encode Decimal as string to preserve precision in JSON."""

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        if hasattr(o, "value"):
            return o.value
        return super().default(o)


class EventJournal:
    """Append-only JSONL writer with size-based rotation."""

    def __init__(
        self,
        symbol: str,
        journal_dir: Optional[Path] = None,
        *,
        run_id: Optional[str] = None,
        max_size_mb: float = 50.0,
    ) -> None:
        self._symbol = symbol
        self._dir = Path(journal_dir) if journal_dir is not None else _DEFAULT_JOURNAL_DIR
        self._dir.mkdir(parents=True, exist_ok=True)
        self._run_id = run_id or uuid.uuid4().hex
        self._max_size_bytes = int(max_size_mb * 1024 * 1024)
        self._seq = 0
        self._rotation_index = 0

        ts = time.strftime("%Y%m%d_%H%M%S")
        safe_symbol = symbol.replace("/", "-")
        self._base_stem = f"mm_{safe_symbol}_{ts}"
        self._path = self._dir / f"{self._base_stem}.jsonl"
        self._fh = open(self._path, "a")  # noqa: SIM115
        logger.info("Event journal: %s (run_id=%s)", self._path, self._run_id)

    # ------------------------------------------------------------------
    # Core writer
    # ------------------------------------------------------------------

    def _write(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._fh.closed:
            return
        self._seq += 1
        record = {
            "ts": time.time(),
            "seq": self._seq,
            "run_id": self._run_id,
            "type": event_type,
            "symbol": self._symbol,
            **data,
        }
        self._fh.write(json.dumps(record, cls=_DecimalEncoder) + "\n")
        self._fh.flush()
        if event_type in _CRITICAL_EVENT_TYPES:
            self._fsync()
        self._maybe_rotate()

    def _fsync(self) -> None:
        try:
            os.fsync(self._fh.fileno())
        except (OSError, ValueError) as exc:
            logger.debug("Journal fsync failed: %s", exc)

    def _maybe_rotate(self) -> None:
        if self._max_size_bytes <= 0:
            return
        try:
            pos = self._fh.tell()
        except (OSError, ValueError):
            return
        if pos < self._max_size_bytes:
            return
        self._fsync()
        self._fh.close()
        self._rotation_index += 1
        self._path = self._dir / f"{self._base_stem}.{self._rotation_index}.jsonl"
        self._fh = open(self._path, "a")  # noqa: SIM115
        logger.info("Journal rotated to: %s", self._path)

    # ------------------------------------------------------------------
    # Event methods
    # ------------------------------------------------------------------

    def record_run_start(self, *, exchange: str, config: Dict[str, Any]) -> None:
        self._write("run_start", {"exchange": exchange, "config": config})

    def record_run_end(self, *, reason: str = "shutdown", stats: Optional[Dict[str, Any]] = None) -> None:
        self._write("run_end", {"reason": reason, "stats": stats or {}})

    def record_state_change(self, *, old: str, new: str, reason: str) -> None:
        self._write("state_change", {"from": old, "to": new, "reason": reason})

    def record_quote(
        self,
        *,
        fair_price: Decimal,
        mode: str,
        bid_price: Optional[Decimal],
        bid_size: Optional[Decimal],
        ask_price: Optional[Decimal],
        ask_size: Optional[Decimal],
        signed_notional: Decimal,
    ) -> None:
        self._write("quote", {
            "fair_price": fair_price,
            "mode": mode,
            "bid_price": bid_price,
            "bid_size": bid_size,
            "ask_price": ask_price,
            "ask_size": ask_size,
            "signed_notional": signed_notional,
        })

    def record_order_placed(
        self,
        *,
        order_id: str,
        side: str,
        price: Decimal,
        size: Decimal,
        reduce_only: bool,
    ) -> None:
        self._write("order_placed", {
            "order_id": order_id,
            "side": side,
            "price": price,
            "size": size,
            "reduce_only": reduce_only,
        })

    def record_order_failed(self, *, side: str, price: Decimal, size: Decimal, error: str) -> None:
        self._write("order_failed", {"side": side, "price": price, "size": size, "error": error})

    def record_orders_cancelled(self, *, count: int, reason: str) -> None:
        self._write("orders_cancelled", {"count": count, "reason": reason})

    def record_margin_check(
        self,
        *,
        equity: Decimal,
        available_margin: Decimal,
        margin_ratio: float,
    ) -> None:
        self._write("margin_check", {
            "equity": equity,
            "available_margin": available_margin,
            "margin_ratio": margin_ratio,
        })

    def record_error(self, *, where: str, error: str, error_count: int) -> None:
        self._write("error", {"where": where, "error": error, "error_count": error_count})

    def record_status(self, status: Dict[str, Any]) -> None:
        self._write("status", {"status": status})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._fh and not self._fh.closed:
            self._fh.flush()
            self._fsync()
            self._fh.close()
        logger.info("Event journal closed: %s", self._path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def event_count(self) -> int:
        return self._seq
