from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .azure.clouds import DEFAULT_CLOUD, supported_clouds

# --------
# Defaults
# --------
DEFAULT_FROM = "now-6h"
DEFAULT_TO = "now"
DEFAULT_WORKERS = 4
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_PAGES = 10
OUTPUT_FORMATS = {"table", "jsonl", "csv", "parquet"}
ALLOWED_CONFIG_KEYS = {
    "cloud",
    "subscriptions",
    "query",
    "queries_file",
    "time_from",
    "time_to",
    "interval_ms",
    "output",
    "outdir",
    "workers",
    "timeout",
    "max_pages",
    "json_logs",
    "log_level",
    "access_token",
}
BOOL_CONFIG_KEYS = {"json_logs"}
INT_CONFIG_KEYS = {"workers", "max_pages", "interval_ms"}
FLOAT_CONFIG_KEYS = {"timeout"}
PATH_CONFIG_KEYS = {"queries_file", "outdir"}
STR_CONFIG_KEYS = {"cloud", "query", "time_from", "time_to", "output", "log_level", "access_token"}


@dataclass(frozen=True)
class RunConfig:
    # Target
    cloud: str = DEFAULT_CLOUD
    subscriptions: Optional[List[str]] = None

    # Queries
    query: Optional[str] = None
    queries_file: Optional[Path] = None
    time_from: str = DEFAULT_FROM
    time_to: str = DEFAULT_TO
    interval_ms: Optional[int] = None

    # Output
    output: str = "table"
    outdir: Optional[Path] = None
    json_logs: bool = False
    log_level: str = "INFO"

    # Transport
    workers: int = DEFAULT_WORKERS
    timeout: float = DEFAULT_TIMEOUT
    max_pages: int = DEFAULT_MAX_PAGES
    access_token: Optional[str] = None


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except Exception as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ValueError(f"Config field '{key}' must be an integer")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            pass
    raise ValueError(f"Config field '{key}' must be a number")


def _split_list(value: Any, key: str) -> List[str]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return [v.strip() for v in value if v.strip()]
    raise ValueError(f"Config field '{key}' must be a list of strings or comma-separated string")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS or value is None:
            continue
        if key == "subscriptions":
            normalized[key] = _split_list(value, key)
        elif key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in FLOAT_CONFIG_KEYS:
            normalized[key] = _coerce_float(key, value)
        elif key in PATH_CONFIG_KEYS:
            if not isinstance(value, (str, Path)):
                raise ValueError(f"Config field '{key}' must be a string path")
            normalized[key] = value
        elif key in STR_CONFIG_KEYS:
            if not isinstance(value, str):
                raise ValueError(f"Config field '{key}' must be a string")
            normalized[key] = value
    return normalized


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="arg-inv", description="Azure Resource Graph query CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")

    def add_query_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--cloud", default=None, choices=supported_clouds(), help=f"Azure cloud (default {DEFAULT_CLOUD})")
        p.add_argument("--subscriptions", default=None, help="Comma-separated subscription IDs")
        src = p.add_mutually_exclusive_group()
        src.add_argument("--query", default=None, help="Single KQL query (refId A)")
        src.add_argument("--queries-file", type=Path, default=None, help="YAML/JSON list of query models")
        p.add_argument("--from", dest="time_from", default=None, help=f"Range start, ISO-8601 or now-<n><unit> (default {DEFAULT_FROM})")
        p.add_argument("--to", dest="time_to", default=None, help=f"Range end (default {DEFAULT_TO})")
        p.add_argument("--interval-ms", type=int, default=None, help="Value for $__interval / $__interval_ms")
        p.add_argument("--workers", type=int, default=None, help=f"Parallel queries (default {DEFAULT_WORKERS})")

    p_query = subparsers.add_parser("query", help="Run queries against Azure Resource Graph")
    add_common(p_query)
    add_query_args(p_query)
    p_query.add_argument("--output", default=None, choices=sorted(OUTPUT_FORMATS), help="Output format (default table)")
    p_query.add_argument("--outdir", type=Path, default=None, help="Output directory for jsonl/csv/parquet")
    p_query.add_argument("--timeout", type=float, default=None, help=f"Request timeout seconds (default {DEFAULT_TIMEOUT})")
    p_query.add_argument("--max-pages", type=int, default=None, help=f"Max $skipToken pages per query (default {DEFAULT_MAX_PAGES})")

    p_build = subparsers.add_parser("build", help="Show interpolated queries and requests without sending them")
    add_common(p_build)
    add_query_args(p_build)

    p_clouds = subparsers.add_parser("list-clouds", help="List supported Azure clouds")
    add_common(p_clouds)
    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, RunConfig) where command is one of: query|build|list-clouds
    """
    ns = args if args is not None else build_parser().parse_args(argv)
    command = ns.command

    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "cloud": _env_str("ARG_INV_CLOUD"),
            "subscriptions": _env_str("ARG_INV_SUBSCRIPTIONS"),
            "query": _env_str("ARG_INV_QUERY"),
            "queries_file": _env_str("ARG_INV_QUERIES_FILE"),
            "time_from": _env_str("ARG_INV_FROM"),
            "time_to": _env_str("ARG_INV_TO"),
            "output": _env_str("ARG_INV_OUTPUT"),
            "outdir": _env_str("ARG_INV_OUTDIR"),
            "workers": _env_int("ARG_INV_WORKERS"),
            "max_pages": _env_int("ARG_INV_MAX_PAGES"),
            "json_logs": _env_bool("ARG_INV_JSON_LOGS"),
            "log_level": _env_str("ARG_INV_LOG_LEVEL"),
            "access_token": _env_str("ARG_INV_ACCESS_TOKEN"),
        }
    )

    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "cloud": getattr(ns, "cloud", None),
            "subscriptions": getattr(ns, "subscriptions", None),
            "query": getattr(ns, "query", None),
            "queries_file": getattr(ns, "queries_file", None),
            "time_from": getattr(ns, "time_from", None),
            "time_to": getattr(ns, "time_to", None),
            "interval_ms": getattr(ns, "interval_ms", None),
            "output": getattr(ns, "output", None),
            "outdir": getattr(ns, "outdir", None),
            "workers": getattr(ns, "workers", None),
            "timeout": getattr(ns, "timeout", None),
            "max_pages": getattr(ns, "max_pages", None),
            "json_logs": getattr(ns, "json_logs", None),
            "log_level": getattr(ns, "log_level", None),
        }
    )

    merged: Dict[str, Any] = {**file_cfg, **env_cfg, **cli_cfg}

    # --query and --queries-file are alternatives; the highest layer setting either wins
    for layer in (cli_cfg, env_cfg):
        if "query" in layer and "queries_file" not in layer:
            merged.pop("queries_file", None)
            break
        if "queries_file" in layer and "query" not in layer:
            merged.pop("query", None)
            break

    subscriptions_raw = merged.get("subscriptions")
    subscriptions = _split_list(subscriptions_raw, "subscriptions") if subscriptions_raw is not None else None
    output = str(merged.get("output") or "table").lower()
    if output not in OUTPUT_FORMATS:
        raise ValueError(f"Output must be one of: {', '.join(sorted(OUTPUT_FORMATS))}")

    cfg = RunConfig(
        cloud=str(merged.get("cloud") or DEFAULT_CLOUD),
        subscriptions=subscriptions or None,
        query=merged.get("query"),
        queries_file=Path(merged["queries_file"]) if merged.get("queries_file") else None,
        time_from=str(merged.get("time_from") or DEFAULT_FROM),
        time_to=str(merged.get("time_to") or DEFAULT_TO),
        interval_ms=merged.get("interval_ms"),
        output=output,
        outdir=Path(merged["outdir"]) if merged.get("outdir") else None,
        json_logs=bool(merged.get("json_logs", False)),
        log_level=str(merged.get("log_level") or "INFO").upper(),
        workers=int(merged.get("workers") or DEFAULT_WORKERS),
        timeout=float(merged.get("timeout") or DEFAULT_TIMEOUT),
        max_pages=int(merged.get("max_pages") or DEFAULT_MAX_PAGES),
        access_token=merged.get("access_token"),
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return {
        "cloud": cfg.cloud,
        "subscriptions": cfg.subscriptions,
        "query": cfg.query,
        "queries_file": str(cfg.queries_file) if cfg.queries_file else None,
        "time_from": cfg.time_from,
        "time_to": cfg.time_to,
        "interval_ms": cfg.interval_ms,
        "output": cfg.output,
        "outdir": str(cfg.outdir) if cfg.outdir else None,
        "json_logs": cfg.json_logs,
        "log_level": cfg.log_level,
        "workers": cfg.workers,
        "timeout": cfg.timeout,
        "max_pages": cfg.max_pages,
        "access_token": "<redacted>" if cfg.access_token else None,
    }
