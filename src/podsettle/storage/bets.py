"""Bet record persistence - the durable checkpoint of every bet's lifecycle."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any

import duckdb
import structlog

from podsettle.errors import StoreWriteFailure
from podsettle.models import Bet, Outcome
from podsettle.storage.db import get_connection, init_schema

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

_COLUMNS = [
    "bet_id",
    "finder",
    "token_address",
    "start_time",
    "total_bet_amount",
    "initial_due_at",
    "final_due_at",
    "initial_price",
    "final_price",
    "outcome",
    "settled",
    "settling",
    "settlement_tx",
    "settlement_error",
]
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM bets"

# Guards applied by set_field: a field is written only while its WHERE clause holds.
_FIELD_GUARDS = {
    "initial_price": "initial_price IS NULL",
    "final_price": "final_price IS NULL AND initial_price IS NOT NULL",
    "outcome": "outcome IS NULL AND initial_price IS NOT NULL AND final_price IS NOT NULL",
    "settled": "settled = false",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _decimal_or_none(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _row_to_bet(row: tuple[Any, ...]) -> Bet:
    r = dict(zip(_COLUMNS, row))
    return Bet(
        bet_id=r["bet_id"],
        finder=r["finder"],
        token_address=r["token_address"],
        start_time=from_ms(r["start_time"]),
        total_bet_amount=Decimal(r["total_bet_amount"]),
        initial_due_at=from_ms(r["initial_due_at"]),
        final_due_at=from_ms(r["final_due_at"]),
        initial_price=_decimal_or_none(r["initial_price"]),
        final_price=_decimal_or_none(r["final_price"]),
        outcome=Outcome(r["outcome"]) if r["outcome"] is not None else None,
        settled=bool(r["settled"]),
        settling=bool(r["settling"]),
        settlement_tx=r["settlement_tx"],
        settlement_error=r["settlement_error"],
    )


def _db_value(value: Any) -> Any:
    if isinstance(value, Outcome):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


class BetStore:
    """DuckDB-backed bet store. Every operation holds the store lock, so each
    check-then-write below is atomic with respect to all other store users."""

    def __init__(self, conn: DuckDBPyConnection):
        self._conn = conn
        self._lock = Lock()

    @classmethod
    def open(cls, db_path: str | Path, read_only: bool = False) -> BetStore:
        conn = get_connection(db_path, read_only=read_only)
        if not read_only:
            init_schema(conn)
        return cls(conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _write(self, operation: str, bet_id: int | None, sql: str, params: list[Any]) -> None:
        try:
            self._conn.execute(sql, params)
        except duckdb.Error as e:
            raise StoreWriteFailure(operation, bet_id, e) from e

    def _fetch_one(self, bet_id: int) -> Bet | None:
        row = self._conn.execute(f"{_SELECT} WHERE bet_id = ?", [bet_id]).fetchone()
        return _row_to_bet(row) if row else None

    def create(self, bet: Bet) -> bool:
        """Insert a new bet. Returns False (and writes nothing) when bet_id already exists."""
        with self._lock:
            if self._fetch_one(bet.bet_id) is not None:
                return False
            self._write(
                "create",
                bet.bet_id,
                """
                INSERT INTO bets (bet_id, finder, token_address, start_time, total_bet_amount,
                                  initial_due_at, final_due_at, settled, settling, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, false, false, ?)
                """,
                [
                    bet.bet_id,
                    bet.finder,
                    bet.token_address,
                    to_ms(bet.start_time),
                    str(bet.total_bet_amount),
                    to_ms(bet.initial_due_at),
                    to_ms(bet.final_due_at),
                    _now_ms(),
                ],
            )
            return True

    def set_field(self, bet_id: int, field: str, value: Any) -> bool:
        """Atomically set one mutable field. Returns False when the bet is missing or
        the field's guard does not hold (already written, or out of order)."""
        guard = _FIELD_GUARDS.get(field)
        if guard is None:
            raise ValueError(f"field {field!r} is not writable through set_field")
        with self._lock:
            exists = self._conn.execute(
                f"SELECT COUNT(*) FROM bets WHERE bet_id = ? AND {guard}", [bet_id]
            ).fetchone()[0]
            if not exists:
                return False
            self._write(
                f"set {field}",
                bet_id,
                f"UPDATE bets SET {field} = ?, updated_at = ? WHERE bet_id = ?",
                [_db_value(value), _now_ms(), bet_id],
            )
            return True

    def get(self, bet_id: int) -> Bet | None:
        with self._lock:
            return self._fetch_one(bet_id)

    def _list(self, where: str, order: str = "bet_id", limit: int | None = None) -> list[Bet]:
        sql = f"{_SELECT} WHERE {where} ORDER BY {order}"
        params: list[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_bet(r) for r in rows]

    def list_pending_settlement(self) -> list[Bet]:
        """Bets with both samples recorded that are not settled yet."""
        return self._list("settled = false AND final_price IS NOT NULL")

    def list_awaiting_samples(self) -> list[Bet]:
        """Unsettled bets still missing their final sample, oldest first."""
        return self._list("settled = false AND final_price IS NULL", order="start_time, bet_id")

    def list_bets(self, limit: int = 50) -> list[Bet]:
        return self._list("1=1", order="start_time DESC, bet_id DESC", limit=limit)

    def claim_settlement(self, bet_id: int) -> bool:
        """Compare-and-set the settling flag. True only for the single caller that
        moves an unsettled, unclaimed bet with an outcome into Settling."""
        with self._lock:
            free = self._conn.execute(
                """
                SELECT COUNT(*) FROM bets
                WHERE bet_id = ? AND settled = false AND settling = false AND outcome IS NOT NULL
                """,
                [bet_id],
            ).fetchone()[0]
            if not free:
                return False
            self._write(
                "claim settlement",
                bet_id,
                "UPDATE bets SET settling = true, updated_at = ? WHERE bet_id = ?",
                [_now_ms(), bet_id],
            )
            return True

    def mark_settled(self, bet_id: int, tx_hash: str) -> None:
        with self._lock:
            self._write(
                "mark settled",
                bet_id,
                """
                UPDATE bets SET settled = true, settling = false, settlement_tx = ?,
                                settlement_error = NULL, updated_at = ?
                WHERE bet_id = ? AND settled = false
                """,
                [tx_hash, _now_ms(), bet_id],
            )

    def release_claim(self, bet_id: int, error: str | None = None) -> None:
        """Return a claimed bet to OutcomeComputed, recording why the submission failed."""
        with self._lock:
            self._write(
                "release claim",
                bet_id,
                """
                UPDATE bets SET settling = false, settlement_error = ?, updated_at = ?
                WHERE bet_id = ? AND settled = false
                """,
                [error, _now_ms(), bet_id],
            )

    def release_stale_claims(self) -> int:
        """Clear claims left behind by a process that died mid-settlement."""
        with self._lock:
            count = self._conn.execute(
                "SELECT COUNT(*) FROM bets WHERE settling = true AND settled = false"
            ).fetchone()[0]
            if count:
                self._write(
                    "release stale claims",
                    None,
                    "UPDATE bets SET settling = false, updated_at = ? WHERE settling = true AND settled = false",
                    [_now_ms()],
                )
                log.warning("stale_settlement_claims_released", count=count)
            return count
