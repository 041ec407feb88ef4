"""
Devbox -- CLI logging setup.

Every egress action (profile load, network create, sidecar start/stop,
rule append) is logged through a ``devbox.*`` logger.  The CLI installs
two handlers on the ``devbox`` root logger:

LOG LOCATION:
    ~/.devbox/logs/devbox.log        (current, DEBUG and up)
    ~/.devbox/logs/devbox.log.1      (previous rotation)

RULES:
    - Single log file, max 10 MB before rotation, 5 backups kept
    - stderr shows the level the user asked for (default WARNING)
    - Format: TIMESTAMP | LEVEL | COMPONENT | MESSAGE

USAGE:
    from devbox.logging import setup_logging
    setup_logging("INFO")
    logging.getLogger("devbox.network.sidecar").info("DNS sidecar started")
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

# =============================================================================
# CONSTANTS
# =============================================================================

MAX_LOG_FILE_BYTES = 10 * 1024 * 1024  # 10 MB per file
LOG_BACKUP_COUNT = 5
ROOT_LOGGER = "devbox"


# =============================================================================
# FORMATTER
# =============================================================================


class DevboxLogFormatter(logging.Formatter):
    """
    Format: TIMESTAMP | LEVEL | COMPONENT | MESSAGE

    The component is the logger name with the ``devbox.`` prefix removed.

    Example:
    2026-02-09T17:30:45.123Z | INFO  | network.sidecar | DNS sidecar web-dns started at 172.30.0.2
    2026-02-09T17:30:45.130Z | WARN  | network.provisioner | ICC isolation unavailable for web-net
    """

    LEVEL_WIDTH = 5
    COMPONENT_WIDTH = 20
    LEVEL_NAMES = {"WARNING": "WARN", "CRITICAL": "CRIT"}

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        ts = created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{created.microsecond // 1000:03d}Z"

        level = self.LEVEL_NAMES.get(record.levelname, record.levelname)
        component = record.name
        if component.startswith(ROOT_LOGGER + "."):
            component = component[len(ROOT_LOGGER) + 1 :]

        line = (
            f"{ts} | {level:<{self.LEVEL_WIDTH}} | "
            f"{component:<{self.COMPONENT_WIDTH}} | {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# SETUP
# =============================================================================


def setup_logging(
    level: str = "WARNING",
    log_file: Path | str | None = None,
    file_level: str = "DEBUG",
) -> logging.Logger:
    """Configure the ``devbox`` logger for a CLI invocation.

    Safe to call more than once: existing handlers are replaced, not stacked.
    A log file that cannot be opened (read-only home, full disk) is skipped;
    stderr logging still works.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(getattr(logging, str(level).upper(), logging.WARNING))
    stderr_handler.setFormatter(DevboxLogFormatter())
    logger.addHandler(stderr_handler)

    if log_file is not None:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                str(path),
                maxBytes=MAX_LOG_FILE_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("Log file %s unavailable: %s", path, exc)
        else:
            file_handler.setLevel(getattr(logging, str(file_level).upper(), logging.DEBUG))
            file_handler.setFormatter(DevboxLogFormatter())
            logger.addHandler(file_handler)

    return logger
