# logger.py
# Logging setup shared by the API and the low-stock watcher

import logging
import sys

import config

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: str = None, log_file: str = None):
    """Configure the root logger: console always, file when LOG_FILE is set."""
    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = log_file or config.LOG_FILE
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=level or config.LOG_LEVEL,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
    )


def log_startup():
    """Log a banner with the runtime settings worth knowing at boot."""
    log = logging.getLogger('bookstore')
    log.info("=" * 60)
    log.info("BOOKSTORE API STARTED")
    log.info("=" * 60)
    log.info(f"Python: {sys.version.split()[0]}")
    log.info(f"Database: {config.DATABASE_NAME}")
    log.info(f"Low-stock threshold: {config.LOW_STOCK_THRESHOLD}")
    if config.LOW_STOCK_INTERVAL_SECONDS > 0:
        log.info(f"Low-stock watch every {config.LOW_STOCK_INTERVAL_SECONDS}s")
    else:
        log.info("Low-stock watch disabled")
    if config.LOG_FILE:
        log.info(f"Log file: {config.LOG_FILE}")
    log.info("=" * 60)
