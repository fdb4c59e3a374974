"""DuckDB connection and schema init."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import duckdb

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

SCHEMA_SQL = """
-- One row per on-chain bet, the only checkpoint of the settlement workflow.
-- Times are ms epoch (UTC). Due times are the persisted fire times of the two samples.
-- Prices and amounts are decimal strings so no precision is lost.
CREATE TABLE IF NOT EXISTS bets (
    bet_id              BIGINT PRIMARY KEY,
    finder              VARCHAR NOT NULL,
    token_address       VARCHAR NOT NULL,
    start_time          BIGINT NOT NULL,
    total_bet_amount    VARCHAR NOT NULL,
    initial_due_at      BIGINT NOT NULL,
    final_due_at        BIGINT NOT NULL,
    initial_price       VARCHAR,
    final_price         VARCHAR,
    outcome             VARCHAR,
    settled             BOOLEAN NOT NULL DEFAULT FALSE,
    settling            BOOLEAN NOT NULL DEFAULT FALSE,
    settlement_tx       VARCHAR,
    settlement_error    VARCHAR,
    updated_at          BIGINT NOT NULL
);
"""


def get_connection(db_path: str | Path, read_only: bool = False) -> DuckDBPyConnection:
    """Return a DuckDB connection. Caller must close or use as context manager.
    Use read_only=True for inspection while the service holds the write lock."""
    path = Path(db_path)
    if not read_only:
        path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(path), read_only=read_only)


def init_schema(conn: DuckDBPyConnection) -> None:
    """Create tables if they do not exist."""
    for stmt in SCHEMA_SQL.split(";"):
        stmt = stmt.strip()
        if stmt:
            try:
                conn.execute(stmt)
            except duckdb.Error as e:
                if "already exists" not in str(e).lower():
                    raise
