from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .last_applied import DEFAULT_ANNOTATION_KEY


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False


@dataclass
class ApplySection:
    annotation_key: str = DEFAULT_ANNOTATION_KEY


@dataclass
class OutputSection:
    format: str = "yaml"   # yaml | json


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"
    file_level: str = "DEBUG"


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    apply: ApplySection
    output: OutputSection
    logging: LoggingSection

    @property
    def run_id(self) -> str:
        """Run identifier, generated on first access when not configured."""
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./dynapply.yml",
    os.path.expanduser("~/.config/dynapply/config.yml"),
    "/etc/dynapply/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False},
    "apply": {"annotation_key": DEFAULT_ANNOTATION_KEY},
    "output": {"format": "yaml"},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}

_FORMATS = {"yaml", "json"}
_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

# Optional DNS-style prefix, then a qualified name.
_ANNOTATION_KEY_RE = re.compile(
    r"^(?:[a-z0-9]([-a-z0-9.]*[a-z0-9])?/)?[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$"
)


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Maps merge recursively, everything else is overridden by `ext`."""
    out: Dict[str, Any] = dict(base)
    for k, v in (ext or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _env_to_dict(prefix: str) -> Dict[str, Any]:
    """DYNAPPLY_APPLY__ANNOTATION_KEY=x -> {"apply": {"annotation_key": "x"}}"""
    out: Dict[str, Any] = {}
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        *parents, leaf = key[len(prefix):].lower().split("__")
        cursor = out
        for part in parents:
            cursor = cursor.setdefault(part, {})
        cursor[leaf] = val
    return out


def _interpolate_env(obj: Any) -> Any:
    """Replace "${VAR}" string values with os.environ["VAR"]."""
    if isinstance(obj, dict):
        return {k: _interpolate_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_env(v) for v in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        return os.environ.get(obj[2:-1], "")
    return obj


def _to_bool(x: Any) -> bool:
    return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}


def _validate(cfg: Dict[str, Any]) -> None:
    problems: List[str] = []

    key = str(cfg["apply"].get("annotation_key") or "")
    if not _ANNOTATION_KEY_RE.match(key):
        problems.append(f"apply.annotation_key is not a valid annotation name: {key!r}")

    fmt = str(cfg["output"].get("format") or "")
    if fmt not in _FORMATS:
        problems.append(f"output.format must be one of {sorted(_FORMATS)}, got {fmt!r}")

    for name in ("console_level", "file_level"):
        level = str(cfg["logging"].get(name) or "").upper()
        if level not in _LEVELS:
            problems.append(f"logging.{name} is not a log level: {level!r}")

    if problems:
        raise ValueError("Invalid configuration: " + "; ".join(problems))


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "DYNAPPLY_",
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix DYNAPPLY_, nested via __)
      3) YAML file (first existing)
      4) Built-in defaults

    ${ENV_VAR} values are interpolated and the result is validated.
    """
    merged = _deep_merge(_DEFAULTS, _load_first_existing(files))
    merged = _deep_merge(merged, _env_to_dict(env_prefix))
    merged = _deep_merge(merged, cli_overrides or {})
    merged = _interpolate_env(merged)

    merged["app"]["dry_run"] = _to_bool(merged["app"].get("dry_run", False))
    merged["output"]["format"] = str(merged["output"].get("format", "")).lower()

    _validate(merged)

    return AppConfig(
        app=AppSection(**merged["app"]),
        apply=ApplySection(**merged["apply"]),
        output=OutputSection(**merged["output"]),
        logging=LoggingSection(**merged["logging"]),
    )
