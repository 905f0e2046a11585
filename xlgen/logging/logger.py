# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Structured JSON logging for xlgen.

Every record leaves the process as one JSON line with four fixed fields:

  {"ts": "2026-...", "level": "INFO", "module": "xlgen.serving.engine.core",
   "msg": "generation finished", "generated_tokens": 17, ...}

Anything passed through ``extra=`` is merged into the object. Generation
code routinely logs tensor shapes and dtypes, so the serializer knows how to
render ``torch.Size``, ``torch.dtype`` and small tensors instead of falling
back to an opaque ``repr``.

Handlers live on the package logger ("xlgen") only. Module loggers obtained
through ``get_logger`` propagate to it, which means a single call to
``configure_logging`` (done by the config bootstrap) controls the whole
library's output.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import torch

PACKAGE_LOGGER_NAME = "xlgen"

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

# LogRecord attributes that are plumbing, not caller context.
_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "relativeCreated", "exc_info",
        "exc_text", "stack_info", "lineno", "funcName", "pathname",
        "filename", "module", "levelno", "levelname", "processName",
        "process", "threadName", "thread", "message", "msecs", "taskName",
    }
)

# Tensors above this many elements are logged by shape only.
_MAX_INLINE_ELEMENTS = 16


def _json_default(value: Any) -> Any:
    """Render values json.dumps can't handle on its own."""
    if isinstance(value, torch.Size):
        return list(value)
    if isinstance(value, torch.dtype):
        return str(value).replace("torch.", "")
    if isinstance(value, torch.device):
        return str(value)
    if isinstance(value, torch.Tensor):
        if value.numel() <= _MAX_INLINE_ELEMENTS:
            return value.detach().cpu().tolist()
        return {"shape": list(value.shape), "dtype": str(value.dtype).replace("torch.", "")}
    if isinstance(value, Path):
        return str(value)
    return str(value)


class JsonFormatter(logging.Formatter):
    """Serialize a LogRecord into a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "msg": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                entry[key] = value

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_json_default)


def resolve_log_level(level_name: str) -> int:
    """Turn a level name string into the corresponding logging constant."""
    upper = level_name.upper()
    if upper not in _VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level '{level_name}'. Must be one of: {', '.join(sorted(_VALID_LOG_LEVELS))}"
        )
    return getattr(logging, upper)


def configure_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Attach JSON handlers to the package logger.

    Calling this again replaces the previous handlers, so tests and
    long-lived processes can change level or destination without
    duplicating output.

    Args:
        log_level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
        log_file: Optional file that receives the same records as stdout.

    Returns:
        The configured package logger.
    """
    level = resolve_log_level(log_level)
    package_logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    package_logger.setLevel(level)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = JsonFormatter()

    stdout_handler = logging.StreamHandler(stream=sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(formatter)
    package_logger.addHandler(stdout_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    package_logger.propagate = False
    return package_logger


def get_logger(name: str) -> logging.Logger:
    """
    Return the logger for a module.

    Names outside the ``xlgen`` namespace are nested under it so that every
    logger in the library shares the package handlers. If nothing has been
    configured yet, the package logger is set up at INFO on stdout.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    if not package_logger.handlers:
        configure_logging()

    if name != PACKAGE_LOGGER_NAME and not name.startswith(PACKAGE_LOGGER_NAME + "."):
        name = f"{PACKAGE_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
