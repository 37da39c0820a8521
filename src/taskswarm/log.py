from __future__ import annotations

import json
import logging
import os
import sys

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
_TRUTHY = {"1", "true", "yes", "on"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "at": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> logging.Logger:
    """Configure the ``taskswarm`` logger tree.

    ``TASKSWARM_LOG_LEVEL`` and ``TASKSWARM_JSON_LOGS`` override the arguments.
    Logs go to stderr so command output on stdout stays machine readable.
    """
    level = os.environ.get("TASKSWARM_LOG_LEVEL", level).upper()
    env_json = os.environ.get("TASKSWARM_JSON_LOGS")
    if env_json is not None:
        json_logs = env_json.strip().lower() in _TRUTHY

    root = logging.getLogger("taskswarm")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_logs else logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))
    root.propagate = False
    return root
