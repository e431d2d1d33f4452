import sys
import json
import logging
import logging.handlers

from reelforge import config

# ── Structured Logging Setup ──────────────────────────────────────
# File handler: JSON-structured for machine parsing
# Console handler: Human-readable for development


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter for pipeline log files."""
    def format(self, record):
        log_entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(level: int = logging.INFO, log_file: str = None) -> None:
    """Install the rotating JSON file handler and the console handler on the root logger."""
    file_handler = logging.handlers.RotatingFileHandler(
        log_file or config.LOG_FILE, maxBytes=10*1024*1024, backupCount=3
    )
    file_handler.setFormatter(StructuredFormatter())
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    console_handler.setLevel(level)

    logging.basicConfig(level=level, handlers=[file_handler, console_handler], force=True)

    # requests/urllib3 are chatty at INFO when polling
    logging.getLogger("urllib3").setLevel(logging.WARNING)
