"""Logging initialiser for the bridge process.

Call ``init()`` once at process start, before any other logging calls.
Log records go to a rotating file under ``log_dir``; in foreground mode a
:class:`logging.StreamHandler` is added so output also shows in the terminal.

Raw XMPP frames are logged at DEBUG on the ``sysapbridge.wire`` logger.  Turn
them on without flooding everything else via ``log_levels``::

    init("bridge", log_dir, log_levels={"sysapbridge.wire": "DEBUG"})

Log format (UTC timestamps)::

    2026-03-02T10:00:00.123Z [INFO    ] sysapbridge.session: hub online
"""

from __future__ import annotations

import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 5

WIRE_LOGGER = "sysapbridge.wire"


class _UtcFormatter(logging.Formatter):
    """Emit ISO-8601 UTC timestamps on every log record."""

    converter = time.gmtime

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        ct = self.converter(record.created)
        t = time.strftime("%Y-%m-%dT%H:%M:%S", ct)
        return f"{t}.{int(record.msecs):03d}Z"


_FMT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"


def _parse_level(name: str, default: int) -> int:
    level = getattr(logging, name.upper(), None)
    return level if isinstance(level, int) else default


def init(
    component: str,
    log_dir: Path,
    *,
    level: str = "INFO",
    foreground: bool = False,
    log_levels: dict[str, str] | None = None,
) -> None:
    """Initialise logging for the bridge.

    Parameters
    ----------
    component:
        Log-file stem, e.g. ``"bridge"``.
    log_dir:
        Directory for the rotating log file.  Created if absent.
    level:
        Root logger level string.  The wire logger stays at INFO unless it is
        overridden, so ``level="DEBUG"`` alone does not dump every frame.
    foreground:
        Also log to the terminal.
    log_levels:
        Per-logger level overrides applied after the root level.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter = _UtcFormatter(_FMT)
    handlers: list[logging.Handler] = []

    file_handler = RotatingFileHandler(
        log_dir / f"{component}.log",
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)

    if foreground:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        handlers.append(stream_handler)

    root = logging.getLogger()
    root.setLevel(_parse_level(level, logging.INFO))
    root.handlers.clear()
    for h in handlers:
        root.addHandler(h)

    logging.getLogger(WIRE_LOGGER).setLevel(logging.INFO)
    for logger_name, level_str in (log_levels or {}).items():
        logging.getLogger(logger_name).setLevel(_parse_level(level_str, logging.INFO))
