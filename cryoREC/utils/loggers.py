import sys
import threading
from functools import lru_cache
from logging import getLogger, Logger, LogRecord, StreamHandler, Formatter, INFO, DEBUG, WARN

from cryoREC.constants import PROJECT_NAME

MAIN_LOGGER_NAME = f"{PROJECT_NAME}.main"
WORKER_LOGGER_NAME = f"{PROJECT_NAME}.worker"


class CustomStreamHandler(StreamHandler):
    """Stream handler shared by all the threads of a reconstruction. Each line says which thread wrote it."""

    def __init__(self, stream=None):
        super().__init__(stream)
        self.stream_lock = threading.Lock()

    @staticmethod
    def prefix(record: LogRecord) -> str:
        if record.name == MAIN_LOGGER_NAME:
            return "[MAIN] "
        return f"[WORKER {record.threadName}] "

    def emit(self, record):
        with self.stream_lock:
            try:
                msg = self.format(record)
                self.stream.write(self.prefix(record) + msg + self.terminator)
                self.flush()
            except Exception:
                self.handleError(record)


@lru_cache(2)
def _getLogger(loggerName: str) -> Logger:
    logger = getLogger(name=loggerName)
    if not any(isinstance(h, CustomStreamHandler) for h in logger.handlers):
        handler = CustomStreamHandler(sys.stdout)
        handler.setLevel(DEBUG)
        handler.setFormatter(Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(handler)
    return logger


def _withVerbosity(logger: Logger, verbose: bool) -> Logger:
    logger.setLevel(INFO if verbose else WARN)
    return logger


def getWorkerLogger(verbose: bool) -> Logger:
    return _withVerbosity(_getLogger(WORKER_LOGGER_NAME), verbose)


def getMainLogger(verbose: bool) -> Logger:
    return _withVerbosity(_getLogger(MAIN_LOGGER_NAME), verbose)
