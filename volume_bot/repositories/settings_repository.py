from __future__ import annotations

import time
from typing import Optional

from volume_bot.models.session import VolumeBotSettings
from volume_bot.repositories.base import SqliteRepository
from volume_bot.utils.logger import log_function

_FIELDS = [name for name in VolumeBotSettings.model_fields if name not in ("user_id", "token_mint")]


class SettingsRepository(SqliteRepository):
    """Una fila de ajustes por (user_id, token_mint)."""

    def _create_table(self):
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS volume_bot_settings(
                    user_id     TEXT NOT NULL,
                    token_mint  TEXT NOT NULL,
                    PRIMARY KEY (user_id, token_mint)
                )
            """)
            # columnas derivadas del modelo; los campos nuevos se añaden solos
            self._add_missing_columns(conn, "volume_bot_settings", {name: "" for name in _FIELDS})

    @log_function
    def get(self, user_id: str, token_mint: str) -> Optional[VolumeBotSettings]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM volume_bot_settings WHERE user_id=? AND token_mint=?",
                (user_id, token_mint),
            ).fetchone()
        if not row:
            return None
        data = {k: row[k] for k in row.keys() if row[k] is not None}
        return VolumeBotSettings(**data)

    @log_function
    def upsert(self, settings: VolumeBotSettings) -> VolumeBotSettings:
        settings = settings.model_copy(update={"updated_at": int(time.time())})
        data = settings.model_dump(mode="json")
        cols = ["user_id", "token_mint", *_FIELDS]
        with self._conn() as conn:
            conn.execute(f"""
                INSERT INTO volume_bot_settings ({', '.join(cols)})
                VALUES ({', '.join('?' for _ in cols)})
                ON CONFLICT(user_id, token_mint) DO UPDATE SET
                    {', '.join(f'{c}=excluded.{c}' for c in _FIELDS)}
            """, tuple(data[c] for c in cols))
        return settings
