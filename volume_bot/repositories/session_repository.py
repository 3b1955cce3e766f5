from __future__ import annotations

import time
from typing import Optional

from volume_bot.enums.session_status import SessionStatus, TERMINAL_STATUSES
from volume_bot.models.session import VolumeSession
from volume_bot.repositories.base import SqliteRepository
from volume_bot.utils.logger import log_function

_ACTIVE = (SessionStatus.PENDING.value, SessionStatus.RUNNING.value, SessionStatus.PAUSED.value)
_TERMINAL = tuple(s.value for s in TERMINAL_STATUSES)
_COLUMNS = (
    "id", "user_id", "token_mint", "target_volume", "strategy", "status",
    "executed_volume", "trades_count", "buy_count", "sell_count", "fees_paid", "pnl",
    "entry_price", "highest_price", "lowest_price", "error_message", "stop_reason",
    "created_at", "started_at", "stopped_at", "updated_at",
)


class SessionRepository(SqliteRepository):
    """Sesiones de volumen. Una fila terminal no vuelve a modificarse."""

    def _create_table(self):
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS volume_sessions(
                    id              TEXT PRIMARY KEY,
                    user_id         TEXT NOT NULL,
                    token_mint      TEXT NOT NULL,
                    target_volume   REAL,
                    strategy        TEXT,
                    status          TEXT,
                    executed_volume REAL DEFAULT 0,
                    trades_count    INTEGER DEFAULT 0,
                    buy_count       INTEGER DEFAULT 0,
                    sell_count      INTEGER DEFAULT 0,
                    fees_paid       REAL DEFAULT 0,
                    pnl             REAL DEFAULT 0,
                    entry_price     REAL,
                    highest_price   REAL,
                    lowest_price    REAL,
                    error_message   TEXT,
                    stop_reason     TEXT,
                    created_at      INTEGER,
                    started_at      INTEGER,
                    stopped_at      INTEGER,
                    updated_at      INTEGER
                )
            """)
            # columnas de coordinación entre instancias
            self._add_missing_columns(conn, "volume_sessions", {
                "runner_id": "TEXT",
                "lease_expires_at": "REAL",
            })
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_user_token ON volume_sessions(user_id, token_mint, status)"
            )

    @staticmethod
    def _to_model(row) -> VolumeSession:
        data = {k: row[k] for k in _COLUMNS}
        return VolumeSession(**{k: v for k, v in data.items() if v is not None})

    @log_function
    def create(self, session: VolumeSession) -> VolumeSession:
        data = session.model_dump(mode="json")
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO volume_sessions ({', '.join(_COLUMNS)}) VALUES ({', '.join('?' for _ in _COLUMNS)})",
                tuple(data[k] for k in _COLUMNS),
            )
        return session

    @log_function
    def get(self, session_id: str) -> Optional[VolumeSession]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM volume_sessions WHERE id=?", (session_id,)).fetchone()
            return self._to_model(row) if row else None

    @log_function
    def find_active(self, user_id: str, token_mint: str) -> Optional[VolumeSession]:
        with self._conn() as conn:
            row = conn.execute(f"""
                SELECT * FROM volume_sessions
                WHERE user_id=? AND token_mint=? AND status IN ({','.join('?' for _ in _ACTIVE)})
                ORDER BY created_at DESC LIMIT 1
            """, (user_id, token_mint, *_ACTIVE)).fetchone()
            return self._to_model(row) if row else None

    @log_function
    def list_active(self, user_id: str | None = None, limit: int = 100) -> list[VolumeSession]:
        q = f"SELECT * FROM volume_sessions WHERE status IN ({','.join('?' for _ in _ACTIVE)})"
        p: list = list(_ACTIVE)
        if user_id:
            q += " AND user_id=?"
            p.append(user_id)
        q += " ORDER BY created_at DESC LIMIT ?"
        p.append(limit)
        with self._conn() as conn:
            return [self._to_model(r) for r in conn.execute(q, tuple(p)).fetchall()]

    @log_function
    def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        stop_reason: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Cambia el estado salvo que la fila ya sea terminal. Devuelve si se escribió."""
        now = int(time.time())
        sets = ["status=?", "updated_at=?"]
        params: list = [status.value, now]
        if status == SessionStatus.RUNNING:
            sets.append("started_at=COALESCE(started_at, ?)")
            params.append(now)
        if status.is_terminal:
            sets += ["stopped_at=?", "runner_id=NULL", "lease_expires_at=NULL"]
            params.append(now)
        if stop_reason is not None:
            sets.append("stop_reason=?")
            params.append(stop_reason)
        if error_message is not None:
            sets.append("error_message=?")
            params.append(error_message)
        with self._conn() as conn:
            cur = conn.execute(
                f"UPDATE volume_sessions SET {', '.join(sets)} "
                f"WHERE id=? AND status NOT IN ({','.join('?' for _ in _TERMINAL)})",
                (*params, session_id, *_TERMINAL),
            )
            return cur.rowcount == 1

    @log_function
    def update_progress(self, session: VolumeSession) -> bool:
        """Persiste los agregados del ciclo; ignora sesiones ya cerradas."""
        with self._conn() as conn:
            cur = conn.execute(f"""
                UPDATE volume_sessions SET
                    executed_volume=?, trades_count=?, buy_count=?, sell_count=?,
                    fees_paid=?, pnl=?, entry_price=?, highest_price=?, lowest_price=?,
                    error_message=?, updated_at=?
                WHERE id=? AND status IN ({','.join('?' for _ in _ACTIVE)})
            """, (
                session.executed_volume, session.trades_count, session.buy_count, session.sell_count,
                session.fees_paid, session.pnl, session.entry_price, session.highest_price,
                session.lowest_price, session.error_message, int(time.time()),
                session.id, *_ACTIVE,
            ))
            return cur.rowcount == 1

    @log_function
    def acquire_lease(self, session_id: str, runner_id: str, ttl_seconds: float = 30.0) -> bool:
        """Un único escritor por sesión: toma o renueva el lease si está libre, es nuestro o caducó."""
        now = time.time()
        with self._conn() as conn:
            cur = conn.execute(f"""
                UPDATE volume_sessions SET runner_id=?, lease_expires_at=?
                WHERE id=? AND status IN ({','.join('?' for _ in _ACTIVE)})
                  AND (runner_id IS NULL OR runner_id=? OR lease_expires_at < ?)
            """, (runner_id, now + ttl_seconds, session_id, *_ACTIVE, runner_id, now))
            return cur.rowcount == 1

    @log_function
    def release_lease(self, session_id: str, runner_id: str) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE volume_sessions SET runner_id=NULL, lease_expires_at=NULL WHERE id=? AND runner_id=?",
                (session_id, runner_id),
            )
