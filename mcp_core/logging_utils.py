from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Tuple


_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def create_session_logger(*, log_dir: str, debug: bool) -> Tuple[logging.Logger, str]:
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = directory / f"session_{timestamp}.log"

    logger_name = f"wallet_assistant_{timestamp}"
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)

    if debug:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(console)

    return logger, str(log_path)


def close_session_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
