import sqlite3, os
from contextlib import contextmanager
from pathlib import Path

from volume_bot.exceptions import PersistenceError


def _resolve_db_path() -> str:
    env_path = os.getenv("DB_PATH")
    if env_path:
        return str(Path(env_path).expanduser().resolve())
    root = Path(__file__).resolve().parents[2]
    default = root / "data" / "volume_bot.db"
    default.parent.mkdir(parents=True, exist_ok=True)
    return str(default)


DB_PATH = _resolve_db_path()


class SqliteRepository:
    """Conexión por llamada; sqlite serializa las escrituras entre hilos."""

    def __init__(self, db_path: str | None = None):
        self.db_path = str(Path(db_path).expanduser().resolve()) if db_path else DB_PATH
        self._create_table()

    @contextmanager
    def _conn(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as e:
            raise PersistenceError(f"No se pudo abrir {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    def _create_table(self) -> None:
        raise NotImplementedError

    @staticmethod
    def _add_missing_columns(conn, table: str, columns: dict[str, str]) -> None:
        cols = {r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
        for name, ddl in columns.items():
            if name not in cols:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
