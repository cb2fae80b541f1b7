from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from rich.console import Console
from rich.table import Table

from .azure.client import ResourceGraphClient, dump_request
from .azure.clouds import resolve_cloud, supported_clouds
from .config import RunConfig, load_run_config
from .export.csv import write_csv
from .export.jsonl import write_jsonl
from .export.parquet import write_parquet
from .logging import LogConfig, get_logger, setup_logging
from .normalize.frame import Frame, json_value
from .normalize.response import QueryResult
from .query.builder import MODEL_KEY, QUERY_TYPE, RESULT_FORMAT_TABLE, DataQuery
from .query.macros import interval_params
from .util.errors import ConfigError, ExitCode, ExportError, QueryValidationError, as_exit_code
from .util.time import TimeRange, parse_time_range

LOG = get_logger(__name__)

MAX_TABLE_ROWS = 200


def _console() -> Console:
    return Console(file=sys.stdout)


def _single_query_model(cfg: RunConfig) -> Dict[str, Any]:
    model: Dict[str, Any] = {
        "queryType": QUERY_TYPE,
        MODEL_KEY: {"query": cfg.query, "resultFormat": RESULT_FORMAT_TABLE},
    }
    if cfg.subscriptions:
        model["subscriptions"] = list(cfg.subscriptions)
    return model


def load_queries_file(path: Path) -> List[DataQuery]:
    """
    Read a YAML/JSON list of query models. Each entry carries its own refId;
    a top-level mapping with a 'queries' key is also accepted.
    """
    if not path.exists():
        raise ConfigError(f"Queries file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse queries file {path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("queries")
    if not isinstance(data, list):
        raise ConfigError("Queries file must contain a list of query models")
    queries: List[DataQuery] = []
    for idx, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise QueryValidationError(f"entry {idx} must be an object")
        model = dict(entry)
        ref_id = model.pop("refId", None)
        if not isinstance(ref_id, str) or not ref_id:
            raise QueryValidationError(f"entry {idx} is missing a refId")
        queries.append(DataQuery(ref_id=ref_id, json=model))
    return queries


def _apply_default_subscriptions(queries: Sequence[DataQuery], subscriptions: Optional[List[str]]) -> List[DataQuery]:
    if not subscriptions:
        return list(queries)
    out: List[DataQuery] = []
    for q in queries:
        if isinstance(q.json, dict) and "subscriptions" not in q.json:
            out.append(DataQuery(ref_id=q.ref_id, json={**q.json, "subscriptions": list(subscriptions)}))
        else:
            out.append(q)
    return out


def resolve_queries(cfg: RunConfig) -> List[DataQuery]:
    if cfg.queries_file:
        return _apply_default_subscriptions(load_queries_file(cfg.queries_file), cfg.subscriptions)
    if cfg.query:
        return [DataQuery(ref_id="A", json=_single_query_model(cfg))]
    raise ConfigError("Provide --query or --queries-file")


def _time_range(cfg: RunConfig) -> TimeRange:
    try:
        return parse_time_range(cfg.time_from, cfg.time_to)
    except ValueError as e:
        raise ConfigError(str(e)) from e


def _params(cfg: RunConfig) -> Dict[str, str]:
    return interval_params(cfg.interval_ms) if cfg.interval_ms else {}


def _make_client(cfg: RunConfig) -> ResourceGraphClient:
    return ResourceGraphClient(
        cfg.cloud,
        token=cfg.access_token,
        timeout=cfg.timeout,
        max_workers=cfg.workers,
        max_pages=cfg.max_pages,
    )


def render_frame(console: Console, frame: Frame, *, max_rows: int = MAX_TABLE_ROWS) -> None:
    table = Table(title=f"{frame.name} ({frame.row_count} rows)", show_lines=False)
    for name in frame.field_names():
        table.add_column(name, overflow="fold")
    for row in frame.rows()[:max_rows]:
        table.add_row(*["" if v is None else str(json_value(v)) for v in row])
    console.print(table)
    if frame.row_count > max_rows:
        console.print(f"[dim]... {frame.row_count - max_rows} more rows[/dim]")
    if frame.fields and frame.fields[0].links:
        link = frame.fields[0].links[0]
        console.print(f"{link.title}: {link.url}", soft_wrap=True)


def write_frame(frame: Frame, output: str, outdir: Path) -> Path:
    path = outdir / f"{frame.name}.{output}"
    try:
        if output == "jsonl":
            write_jsonl(frame, path)
        elif output == "csv":
            write_csv(frame, path)
        elif output == "parquet":
            write_parquet(frame, path)
        else:
            raise ConfigError(f"Unsupported output format: {output}")
    except OSError as e:
        raise ExportError(f"Failed to write {path}: {e}") from e
    return path


def report_results(results: Sequence[QueryResult], cfg: RunConfig, console: Console) -> int:
    code = int(ExitCode.OK)
    for res in results:
        if res.error is not None:
            console.print(f"[bold red]{res.ref_id}[/bold red]", highlight=False)
            console.print(res.error, markup=False, highlight=False)
            code = int(ExitCode.REMOTE_ERROR)
            continue
        if res.frame is None:
            continue
        if cfg.output == "table":
            render_frame(console, res.frame)
        else:
            path = write_frame(res.frame, cfg.output, cfg.outdir or Path.cwd())
            LOG.info(
                "Wrote result",
                extra={"step": "export", "phase": "complete", "ref_id": res.ref_id, "path": str(path)},
            )
            console.print(f"{res.ref_id}: {path}", highlight=False)
    return code


def cmd_query(cfg: RunConfig) -> int:
    client = _make_client(cfg)
    queries = resolve_queries(cfg)
    time_range = _time_range(cfg)
    LOG.info(
        "Query batch started",
        extra={"step": "query", "phase": "start", "count": len(queries), "cloud": cfg.cloud},
    )
    results = client.query(queries, time_range, _params(cfg))
    return report_results(results, cfg, _console())


def cmd_build(cfg: RunConfig) -> int:
    client = _make_client(cfg)
    built = client.build(resolve_queries(cfg), _time_range(cfg), _params(cfg))
    console = _console()
    for q in built:
        console.rule(f"{q.ref_id} ({q.result_format})")
        console.print(q.interpolated_query, markup=False, highlight=False)
        console.print_json(data=dump_request(client.prepare(q)))
    return int(ExitCode.OK)


def cmd_list_clouds(cfg: RunConfig) -> int:
    table = Table(title="Azure clouds")
    table.add_column("cloud")
    table.add_column("api")
    table.add_column("portal")
    for name in supported_clouds():
        cloud = resolve_cloud(name)
        table.add_row(cloud.name, cloud.api_url, cloud.portal_url)
    _console().print(table)
    return int(ExitCode.OK)


def main(argv: Optional[List[str]] = None) -> None:
    try:
        command, cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))

        if command == "query":
            code = cmd_query(cfg)
        elif command == "build":
            code = cmd_build(cfg)
        elif command == "list-clouds":
            code = cmd_list_clouds(cfg)
        else:
            raise ConfigError(f"Unknown command: {command}")

        sys.exit(code)
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when piping to `head`; stdout is gone, so exit quietly
        sys.exit(0)
    except Exception as e:
        setup_logging(LogConfig())
        LOG.error("Execution failed", extra={"error": str(e)})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
