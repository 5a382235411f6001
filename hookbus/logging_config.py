"""Logging setup for hookbus processes.

The root logger gets a rotating file handler and, for long-running or
interactive commands, a stderr handler; stdout stays free for command output.
Per-logger levels from ``logging.levels`` quiet chatty libraries (httpx logs
every request at INFO) or raise detail for one component, e.g.
``hookbus.webhooks.delivery: DEBUG``.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _level(value: Any, default: int = logging.INFO) -> int:
    """Numeric level for an int or a level name; default for unknown names."""
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper()) if value else default
    return level if isinstance(level, int) else default


def _file_handler(project_root: Path, cfg: dict[str, Any]) -> logging.Handler:
    log_path = project_root / cfg.get("file", "data/logs/hookbus.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )


def apply_logger_levels(levels: dict[str, Any]) -> None:
    """Set levels on named loggers. Unknown level names are ignored."""
    for name, value in (levels or {}).items():
        level = _level(value, default=0)
        if level:
            logging.getLogger(name).setLevel(level)


def setup_logging(
    project_root: Path, settings: dict[str, Any], force_console: bool = False
) -> None:
    """Replace root handlers with hookbus's file (and optional stderr) handlers.

    Reads settings["logging"]: file, level, max_bytes, backup_count,
    log_to_console, levels. force_console turns on stderr output regardless
    of log_to_console (used by `hookbus run`).
    """
    cfg = settings.get("logging", {})
    level = _level(cfg.get("level", "INFO"))
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = [_file_handler(project_root, cfg)]
    if force_console or cfg.get("log_to_console", False):
        handlers.append(logging.StreamHandler(sys.stderr))

    root = logging.getLogger()
    for h in root.handlers[:]:
        root.removeHandler(h)
    root.setLevel(level)
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(formatter)
        root.addHandler(h)

    apply_logger_levels(cfg.get("levels", {}))
