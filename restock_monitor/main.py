from __future__ import annotations

import logging
import signal
import threading
from typing import Optional

from . import config, db, notifier
from .api import MonitorApi
from .worker import CheckWorker


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def delivery_loop(stop: threading.Event) -> None:
    """Background job: deliver unsent notifications every few seconds."""
    logger = logging.getLogger(__name__)
    logger.info("Starting delivery loop (interval=%ds)", config.DELIVERY_INTERVAL_SECONDS)
    while not stop.is_set():
        try:
            notifier.deliver_pending()
        except Exception:
            logger.exception("Error in delivery_loop")
        stop.wait(config.DELIVERY_INTERVAL_SECONDS)


def main() -> None:
    """Initialise and run the check worker, delivery loop and API."""
    config.validate()
    setup_logging()
    logger = logging.getLogger(__name__)

    logger.info("Initializing database at %s…", config.SQLITE_DB_PATH)
    db.init_db()

    stop = threading.Event()
    worker = CheckWorker()

    api: Optional[MonitorApi] = None
    if config.API_ENABLED:
        api = MonitorApi(worker=worker)
        try:
            api.start()
        except OSError:
            logger.exception("API server failed to start on %s:%s", config.API_HOST, config.API_PORT)
            api = None
    else:
        logger.info("API disabled.")

    if config.DISCORD_WEBHOOK_URL or config.EMAIL_ENABLED:
        t_delivery = threading.Thread(target=delivery_loop, args=(stop,), name="delivery", daemon=True)
        t_delivery.start()
    else:
        logger.info("No delivery channel configured; notifications are stored only.")

    def _shutdown(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    worker.start()
    try:
        stop.wait()
    finally:
        worker.stop(timeout=60)
        if api is not None:
            api.stop()


if __name__ == "__main__":
    main()
