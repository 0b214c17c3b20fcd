# utils/logger.py – Root logger setup, level from config, memory and timing logs

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

try:
    import psutil  # type: ignore

    _HAS_PSUTIL = True
except Exception:
    psutil = None  # type: ignore
    _HAS_PSUTIL = False

__all__ = ["setup_logging", "apply_logging_config", "log_memory_usage", "log_elapsed"]

_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(message)s"


def setup_logging(log_file: Optional[Path] = None, level: int = logging.INFO) -> None:
    """Configure root logger with console and optional file output."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=_FORMAT, handlers=handlers, force=True)


def apply_logging_config(cfg: Dict[str, Any]) -> None:
    """Set root log level from ``cfg["logging"]["level"]``."""
    level_name = str((cfg.get("logging") or {}).get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.getLogger().setLevel(level)


def log_memory_usage(prefix: str = "") -> None:
    """Log current process RSS if psutil is available."""
    if not _HAS_PSUTIL:
        logging.debug("psutil not installed; cannot log memory usage")
        return
    try:
        mem_mb = psutil.Process().memory_info().rss / 1024**2
        logging.info("%sMemory usage: %.2f MB", prefix, mem_mb)
    except Exception as exc:
        logging.debug("Failed to log memory usage: %s", exc)


@contextmanager
def log_elapsed(what: str, timings: Optional[Dict[str, float]] = None, key: str = "") -> Iterator[None]:
    """Time the enclosed block, log it at DEBUG and store seconds in ``timings[key]``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if timings is not None:
            timings[key or what] = elapsed
        logging.debug("%s took %.3f s", what, elapsed)
