"""
Central logging for dynapply.

- Console handler (stderr): configured level, INFO by default
- Timed rotated file handler: <base_dir>/app.log, DEBUG, daily rotation
- Per-run file handler: <base_dir>/YYYY-MM-DD/<action>_<run_id>.log
- Secret redaction in messages and % args (snapshots may carry credentials)
- UTC timestamps in ISO-8601

Engine modules log under the `dynapply.*` hierarchy; handlers live on the
base logger so those records reach every sink.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


class MaskSecretsFilter(logging.Filter):
    """Redact bearer tokens, API keys, passwords and tokens from log records."""

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(\"?api[_-]?key\"?\s*[=:]\s*\"?)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(\"?password\"?\s*[=:]\s*\"?)([^,\s\"]+)", re.IGNORECASE),
        re.compile(r"(\"?\btoken\"?\s*[=:]\s*\"?)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @classmethod
    def mask(cls, text: str) -> str:
        for pat in cls._patterns:
            text = pat.sub(r"\1***REDACTED***", text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, dict):
            record.args = {k: self.mask(str(v)) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self.mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        return True


def _utc_formatter() -> logging.Formatter:
    fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "run=%(run_id)s action=%(action)s object=%(object)s | %(message)s"
    )
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


class _ContextDefaults(logging.Filter):
    """Fill context fields for records logged outside the adapter (engine modules)."""

    def __init__(self, defaults: Dict[str, Any]) -> None:
        super().__init__()
        self.defaults = defaults

    def filter(self, record: logging.LogRecord) -> bool:
        for k, v in self.defaults.items():
            if not hasattr(record, k):
                setattr(record, k, v)
        return True


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def _prepare_handler(handler: logging.Handler, level: int, defaults: Dict[str, Any]) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(_utc_formatter())
    handler.addFilter(_ContextDefaults(defaults))
    handler.addFilter(MaskSecretsFilter())
    return handler


def _drop_handlers(logger: logging.Logger, kind: type, keep_path: Optional[str] = None) -> Optional[logging.Handler]:
    """Remove handlers of `kind`, except one writing to `keep_path`, which is returned."""
    kept = None
    for h in list(logger.handlers):
        if not isinstance(h, kind):
            continue
        if keep_path and os.path.abspath(getattr(h, "baseFilename", "")) == keep_path:
            kept = h
            continue
        logger.removeHandler(h)
        h.close()
    return kept


def build_logger(
    *,
    name: str = "dynapply",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    obj: str = "-",
) -> logging.LoggerAdapter:
    """
    Configure the `<name>` logger hierarchy and return an adapter for
    `<name>.<action>.<run_id>` carrying run/action/object context.

    Safe to call repeatedly: console and app.log handlers are replaced, never duplicated.
    """
    defaults = {"run_id": run_id, "action": action, "object": obj}

    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)

    # Exactly one console handler on the current stderr (pytest swaps streams).
    for h in list(base.handlers):
        if type(h) is logging.StreamHandler:
            base.removeHandler(h)
            h.close()
    base.addHandler(_prepare_handler(logging.StreamHandler(stream=sys.stderr), _level(console_level, logging.INFO), defaults))

    os.makedirs(base_dir, exist_ok=True)
    app_log = os.path.abspath(os.path.join(base_dir, "app.log"))
    kept = _drop_handlers(base, logging.handlers.TimedRotatingFileHandler, keep_path=app_log)
    if kept is not None:
        kept.setLevel(_level(file_level, logging.DEBUG))
        # Engine records bypass the adapter; tag them with this run.
        for f in kept.filters:
            if isinstance(f, _ContextDefaults):
                f.defaults = defaults
    else:
        rotating = logging.handlers.TimedRotatingFileHandler(
            app_log, when="midnight", backupCount=14, encoding="utf-8", utc=True
        )
        base.addHandler(_prepare_handler(rotating, _level(file_level, logging.DEBUG), defaults))

    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    if not any(isinstance(h, logging.FileHandler) for h in child.handlers):
        dated_dir = Path(base_dir) / datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dated_dir.mkdir(parents=True, exist_ok=True)
        run_file = logging.FileHandler(dated_dir / f"{action}_{run_id}.log", encoding="utf-8")
        child.addHandler(_prepare_handler(run_file, _level(file_level, logging.DEBUG), defaults))

    adapter = logging.LoggerAdapter(child, defaults)
    adapter.debug("Logger initialised")
    return adapter
