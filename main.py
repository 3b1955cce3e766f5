# main.py
from __future__ import annotations
import signal
import threading

from dotenv import load_dotenv

# ---- .env antes de importar módulos que leen el entorno ----
load_dotenv()

from volume_bot.app import run  # noqa: E402
from volume_bot.utils.config import load_config  # noqa: E402
from volume_bot.utils.logger import logger_manager  # noqa: E402

logger = logger_manager.setup_logger(__name__)

stop_all_evt = threading.Event()


def shutdown(*_):
    logger.info("🛑 Señal de apagado recibida, deteniendo sesiones...")
    stop_all_evt.set()


signal.signal(signal.SIGINT, shutdown)
signal.signal(signal.SIGTERM, shutdown)


if __name__ == "__main__":
    logger.info("🚀 Iniciando volume bot...")
    try:
        run(load_config(), stop_all_evt)
    finally:
        logger.info("✅ Apagado completado.")
