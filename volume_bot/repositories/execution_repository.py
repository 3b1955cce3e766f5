from __future__ import annotations

import json
import time

from volume_bot.models.execution import ExecutionRecord
from volume_bot.models.risk import RiskExecution
from volume_bot.repositories.base import SqliteRepository
from volume_bot.utils.logger import log_function


class ExecutionRepository(SqliteRepository):
    """Log append-only de ejecuciones por wallet y ciclo."""

    def _create_table(self):
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS execution_logs(
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id   TEXT NOT NULL,
                    cycle        INTEGER,
                    wallet_id    TEXT,
                    public_key   TEXT,
                    role         TEXT,
                    intent       TEXT,
                    volume       REAL,
                    notional     REAL,
                    outcome      TEXT,
                    reason       TEXT,
                    signature    TEXT,
                    sold_tokens  REAL,
                    dust_prevention INTEGER,
                    platform_fee REAL,
                    fee_collected INTEGER,
                    error        TEXT,
                    payload      TEXT,
                    created_at   INTEGER
                )
            """)
            self._add_missing_columns(conn, "execution_logs", {"notional": "REAL"})
            conn.execute("CREATE INDEX IF NOT EXISTS idx_exec_session ON execution_logs(session_id, id)")

    @log_function
    def append(self, session_id: str, records: list[ExecutionRecord], cycle: int | None = None) -> int:
        if not records:
            return 0
        now = int(time.time())
        rows = [(
            session_id, cycle, r.wallet_id, r.public_key, str(getattr(r.role, "value", r.role)),
            str(getattr(r.intent, "value", r.intent)), r.volume, r.notional, r.outcome, r.reason, r.signature,
            r.sold_tokens, int(r.dust_prevention), r.platform_fee,
            None if r.platform_fee_collected is None else int(r.platform_fee_collected),
            r.error, json.dumps(r.model_dump(mode="json")), now,
        ) for r in records]
        with self._conn() as conn:
            conn.executemany("""
                INSERT INTO execution_logs (
                    session_id, cycle, wallet_id, public_key, role, intent, volume, notional, outcome, reason,
                    signature, sold_tokens, dust_prevention, platform_fee, fee_collected, error,
                    payload, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
        return len(rows)

    @log_function
    def list_for_session(self, session_id: str, limit: int = 50) -> list[dict]:
        with self._conn() as conn:
            cur = conn.execute("""
                SELECT id, cycle, wallet_id, public_key, role, intent, volume, notional, outcome, reason,
                       signature, sold_tokens, dust_prevention, platform_fee, fee_collected, error, created_at
                FROM execution_logs WHERE session_id=?
                ORDER BY id DESC LIMIT ?
            """, (session_id, limit))
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, r)) for r in cur.fetchall()]


class RiskExecutionRepository(SqliteRepository):
    """Disparos del gestor de riesgo (take profit, stop loss...)."""

    def _create_table(self):
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS risk_executions(
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id     TEXT NOT NULL,
                    trigger_type   TEXT,
                    price          REAL,
                    profit_percent REAL,
                    sell_percent   REAL,
                    success        INTEGER,
                    wallets        INTEGER,
                    error          TEXT,
                    created_at     REAL
                )
            """)

    @log_function
    def append(self, execution: RiskExecution) -> None:
        with self._conn() as conn:
            conn.execute("""
                INSERT INTO risk_executions (
                    session_id, trigger_type, price, profit_percent, sell_percent,
                    success, wallets, error, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                execution.session_id, execution.trigger.value, execution.price, execution.profit_percent,
                execution.sell_percent, int(execution.success), execution.wallets, execution.error,
                execution.created_at,
            ))

    @log_function
    def list_for_session(self, session_id: str) -> list[dict]:
        with self._conn() as conn:
            cur = conn.execute(
                "SELECT * FROM risk_executions WHERE session_id=? ORDER BY id ASC", (session_id,)
            )
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, r)) for r in cur.fetchall()]
