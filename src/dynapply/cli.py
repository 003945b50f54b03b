"""
Command-line interface for dynapply.

Usage (examples):
  - Merge desired objects into observed ones, print the objects to write back:
      dynapply apply --observed ./observed.yaml --desired ./desired.yaml

  - Plan only (summary, no output objects):
      dynapply apply --observed ./observed.yaml --desired ./desired.yaml --dry-run

  - Show the last-applied snapshot recorded on objects:
      dynapply last-applied --object ./observed.yaml
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .core.applier import ObjectApplier
from .core.apply import ApplyError
from .core.config import load_config
from .core.last_applied import get_last_applied, object_ref
from .core.logging_setup import build_logger

STATUSES = ["CREATED", "UPDATED", "UNCHANGED", "ERROR", "EXCEPTION"]


def _read_objects(path: str) -> List[Dict[str, Any]]:
    """
    Read every object from a YAML/JSON file.
    - multi-document YAML is flattened
    - `kind: List` documents (and plain top-level lists) contribute their items
    - empty documents are skipped
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Objects file not found: {path}")
    with p.open("r", encoding="utf-8") as f:
        docs = list(yaml.safe_load_all(f))

    out: List[Dict[str, Any]] = []
    for doc in docs:
        if doc is None:
            continue
        if isinstance(doc, dict) and doc.get("kind") == "List" and isinstance(doc.get("items"), list):
            doc = doc["items"]
        out.extend(doc if isinstance(doc, list) else [doc])
    return out


def _dump_objects(objs: List[Dict[str, Any]], fmt: str) -> str:
    if fmt == "json":
        if len(objs) == 1:
            return json.dumps(objs[0], indent=2) + "\n"
        return json.dumps({"apiVersion": "v1", "kind": "List", "items": objs}, indent=2) + "\n"
    return yaml.safe_dump_all(objs, sort_keys=False, default_flow_style=False)


def _summarize_counts(counts: Dict[str, int]) -> str:
    return " | ".join(f"{k}={counts.get(k, 0)}" for k in STATUSES)


def _exit_code_from_counts(counts: Dict[str, int]) -> int:
    if counts.get("ERROR", 0) or counts.get("EXCEPTION", 0):
        return 2
    return 0


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dynapply", description="Client-side declarative apply for resource documents")
    sub = p.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("apply", help="Merge desired objects into observed objects")
    a.add_argument("--desired", required=True, help="Desired objects (.yaml/.json)")
    a.add_argument("--observed", default=None, help="Observed objects (.yaml/.json); omit when none exist yet")
    a.add_argument("--out", default=None, help="Write merged objects here instead of stdout")
    a.add_argument("--format", default=None, choices=["yaml", "json"], help="Output format")
    a.add_argument("--annotation-key", default=None, help="Annotation holding the last-applied snapshot")
    a.add_argument("--dry-run", action="store_true", help="Only print the summary")
    _add_logging_args(a)

    s = sub.add_parser("last-applied", help="Print the last-applied snapshot of objects")
    s.add_argument("--object", required=True, help="Objects file (.yaml/.json)")
    s.add_argument("--annotation-key", default=None, help="Annotation holding the last-applied snapshot")
    _add_logging_args(s)

    return p


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--logs-dir", default=None, help="Logs base directory")
    parser.add_argument("--console-level", default=None, help="Console log level")
    parser.add_argument("--file-level", default=None, help="File log level")


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Only options given on the command line override file/env config."""
    candidates = {
        "app": {"dry_run": True if getattr(args, "dry_run", False) else None},
        "apply": {"annotation_key": args.annotation_key},
        "output": {"format": getattr(args, "format", None)},
        "logging": {
            "base_dir": args.logs_dir,
            "console_level": args.console_level,
            "file_level": args.file_level,
        },
    }
    overrides: Dict[str, Any] = {}
    for section, values in candidates.items():
        given = {k: v for k, v in values.items() if v is not None}
        if given:
            overrides[section] = given
    return overrides


def _apply_cmd(args: argparse.Namespace) -> int:
    cfg = load_config(_cli_overrides(args))
    logger = build_logger(
        run_id=cfg.run_id,
        action="apply",
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
    )
    logger.info("Starting dynapply apply (dry_run=%s)", cfg.app.dry_run)

    desired = _read_objects(args.desired)
    observed = _read_objects(args.observed) if args.observed else []
    logger.info("Loaded %s desired and %s observed object(s)", len(desired), len(observed))

    applier = ObjectApplier(annotation_key=cfg.apply.annotation_key, logger=logger)
    results, counts = applier.apply(observed, desired)
    summary = _summarize_counts(counts)
    logger.info("Apply summary: %s", summary)

    if cfg.app.dry_run:
        print(summary)
        return _exit_code_from_counts(counts)

    rendered = _dump_objects([r.obj for r in results if r.obj is not None], cfg.output.format)
    if args.out:
        Path(args.out).write_text(rendered, encoding="utf-8")
        print(summary)
    else:
        sys.stdout.write(rendered)
        print(summary, file=sys.stderr)
    return _exit_code_from_counts(counts)


def _last_applied_cmd(args: argparse.Namespace) -> int:
    cfg = load_config(_cli_overrides(args))
    logger = build_logger(
        run_id=cfg.run_id,
        action="last-applied",
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
    )

    code = 0
    for idx, obj in enumerate(_read_objects(args.object)):
        if not isinstance(obj, dict):
            logger.error("Item #%d is not an object (%s)", idx, type(obj).__name__)
            code = 2
            continue
        ref = object_ref(obj)
        try:
            snapshot = get_last_applied(obj, cfg.apply.annotation_key)
        except ApplyError as e:
            logger.error("%s: %s", ref, e)
            code = 2
            continue
        print(f"# {ref}")
        print(yaml.safe_dump(snapshot, sort_keys=False, default_flow_style=False), end="")
    return code


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.cmd == "apply":
        return _apply_cmd(args)
    if args.cmd == "last-applied":
        return _last_applied_cmd(args)

    parser.error("Unknown command")  # pragma: no cover
    return 2  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
