from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Optional

LogFunc = Callable[[str, str, str, Optional[str]], None]


def setup_logging(level: str, logfile: str):
    Path(logfile).parent.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Clear existing handlers to avoid duplicates across restarts/reloads.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] %(message)s")

    fh = logging.FileHandler(logfile, encoding="utf-8")
    fh.setLevel(log_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(log_level)
        logger.propagate = True

    root.info("logging initialized")


def make_log_func(prefix: str = "snipsync") -> LogFunc:
    """Build the `log_func(level, module, message, detail)` callable the engine logs through."""

    def log_func(level: str, module: str, message: str, detail: Optional[str] = None):
        logging.getLogger(f"{prefix}.{module}").log(
            getattr(logging, level.upper(), logging.INFO),
            f"{message} {detail or ''}".strip(),
        )

    return log_func


def detail_json(**fields) -> str:
    return json.dumps(fields, ensure_ascii=False, default=str)
