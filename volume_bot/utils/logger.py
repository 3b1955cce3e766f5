from __future__ import annotations
import logging
from logging.handlers import RotatingFileHandler
import os, functools, time
from pathlib import Path

_DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", "2097152"))
_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))
_FILE_LOGS = os.getenv("LOG_TO_FILE", "true").lower() == "true"
# Los argumentos pueden contener firmantes o planes enormes
_ARGS_PREVIEW = int(os.getenv("LOG_ARGS_PREVIEW", "240"))

_FMT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


class _LoggerManager:
    def __init__(self) -> None:
        self._configured = False
        self._file_handlers: dict[str, logging.Handler] = {}
        self._log_dir = os.getenv("LOG_DIR", "./logs")

    def _level(self) -> int:
        return getattr(logging, _DEFAULT_LEVEL, logging.INFO)

    def _ensure(self) -> None:
        if self._configured:
            return

        root = logging.getLogger("volume_bot")
        root.setLevel(self._level())
        if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
            sh = logging.StreamHandler()
            sh.setLevel(self._level())
            sh.setFormatter(logging.Formatter(fmt=_FMT, datefmt=_DATEFMT))
            root.addHandler(sh)

        if _FILE_LOGS:
            Path(self._log_dir).mkdir(parents=True, exist_ok=True)
        self._configured = True

    def setup_logger(self, name: str) -> logging.Logger:
        """Logger por módulo: consola compartida + fichero rotativo propio."""
        self._ensure()
        # todo cuelga de "volume_bot" para heredar la salida a consola
        if not name.startswith("volume_bot"):
            name = f"volume_bot.{name}"
        logger = logging.getLogger(name)

        if _FILE_LOGS and name not in self._file_handlers:
            file_name = name.split(".")[-1] or "volume_bot"
            file_path = os.path.join(self._log_dir, f"{file_name}.log")
            try:
                fh = RotatingFileHandler(file_path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
                fh.setLevel(self._level())
                fh.setFormatter(logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s", datefmt=_DATEFMT))
                logger.addHandler(fh)
                self._file_handlers[name] = fh
            except OSError as e:
                logger.warning(f"No se pudo abrir {file_path} para logs: {e}")
                self._file_handlers[name] = logging.NullHandler()

        return logger

    def session_logger(self, name: str, session_id: str) -> logging.LoggerAdapter:
        """Adapter que antepone el id de sesión a cada mensaje."""
        return _SessionAdapter(self.setup_logger(name), {"session_id": session_id})


class _SessionAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['session_id'][:8]}] {msg}", kwargs


logger_manager = _LoggerManager()


def _preview(value) -> str:
    text = repr(value)
    if len(text) > _ARGS_PREVIEW:
        return text[:_ARGS_PREVIEW] + "…"
    return text


def log_function(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logger_manager.setup_logger(func.__module__)
        # args[0] suele ser self
        shown = args[1:] if args and hasattr(args[0], func.__name__) else args
        logger.debug(f"→ {func.__qualname__} args={_preview(shown)} kwargs={_preview(kwargs)}")
        t0 = time.time()
        try:
            result = func(*args, **kwargs)
            logger.debug(f"← {func.__qualname__} ({(time.time()-t0)*1000:.1f} ms)")
            return result
        except Exception as e:
            logger.exception(f"✗ {func.__qualname__}: {e}")
            raise
    return wrapper
