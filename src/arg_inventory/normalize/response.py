"""
Normalization of Resource Graph responses.

Successful responses become a Frame annotated with a portal deep link.
Error responses become one deterministic diagnostic string. The error
envelope is only loosely standardized, so decoding yields either an
ErrorEnvelope or a RawErrorBody and never raises; anything that does not
match the expected shape is reported with the raw body text.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import quote

from ..logging import get_logger
from ..query.builder import InterpolatedQuery
from ..util.time import to_utc
from .frame import Field, Frame, add_config_links

LOG = get_logger(__name__)

PORTAL_QUERY_BLADE = "/#blade/HubsExtension/ArgQueryBlade/query/"

_STRING_TYPES = {"string", "guid", "timespan"}
_INT_TYPES = {"integer", "int", "long"}
_FLOAT_TYPES = {"number", "real", "decimal", "double"}
_BOOL_TYPES = {"boolean", "bool"}
_TIME_TYPES = {"datetime", "date"}


@dataclass(frozen=True)
class ErrorDetail:
    code: str
    message: str
    line: Optional[int] = None
    character_position_in_line: Optional[int] = None
    token: str = ""

    def render(self) -> str:
        if not self.line:
            return self.message
        if not self.character_position_in_line:
            return f'{self.code}: line {self.line}, "{self.token}"'
        return f'{self.code}: line {self.line}, pos {self.character_position_in_line}, "{self.token}"'


@dataclass(frozen=True)
class ErrorEnvelope:
    code: str
    message: str
    details: Tuple[ErrorDetail, ...] = ()


@dataclass(frozen=True)
class RawErrorBody:
    body: str


DecodedError = Union[ErrorEnvelope, RawErrorBody]


@dataclass(frozen=True)
class QueryResult:
    ref_id: str
    frame: Optional[Frame] = None
    error: Optional[str] = None
    status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class _SchemaMismatch(Exception):
    pass


def _body_text(body: Union[str, bytes, None]) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8", "replace")
    return body


def _opt_str(obj: Dict[str, Any], key: str) -> Optional[str]:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise _SchemaMismatch(key)
    return value


def _opt_int(obj: Dict[str, Any], key: str) -> Optional[int]:
    value = obj.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise _SchemaMismatch(key)
    return value


def _parse_detail(entry: Any) -> ErrorDetail:
    if not isinstance(entry, dict):
        raise _SchemaMismatch("details[]")
    return ErrorDetail(
        code=_opt_str(entry, "code") or "",
        message=_opt_str(entry, "message") or "",
        line=_opt_int(entry, "line"),
        character_position_in_line=_opt_int(entry, "characterPositionInLine"),
        token=_opt_str(entry, "token") or "",
    )


def _parse_envelope(doc: Any) -> ErrorEnvelope:
    if not isinstance(doc, dict):
        raise _SchemaMismatch("top-level")
    err = doc.get("error")
    if not isinstance(err, dict):
        raise _SchemaMismatch("error")
    code = _opt_str(err, "code")
    message = _opt_str(err, "message")
    if not code and not message:
        raise _SchemaMismatch("error.code/error.message")
    details = err.get("details")
    if details is None:
        details = []
    if not isinstance(details, list):
        raise _SchemaMismatch("error.details")
    return ErrorEnvelope(
        code=code or "",
        message=message or "",
        details=tuple(_parse_detail(d) for d in details),
    )


def decode_error_body(body: Union[str, bytes, None]) -> DecodedError:
    """
    Decode an error response body. Never raises.
    """
    text = _body_text(body)
    try:
        return _parse_envelope(json.loads(text))
    except (ValueError, RecursionError, _SchemaMismatch) as e:
        LOG.debug(
            "Error body does not match the expected envelope",
            extra={"step": "normalize", "phase": "error", "mismatch": str(e)},
        )
        return RawErrorBody(body=text)


def format_error(status_line: str, decoded: DecodedError) -> str:
    if isinstance(decoded, RawErrorBody):
        return f"request failed, status: {status_line}, body: {decoded.body}"
    lines = [
        f"request failed, status: {status_line}",
        f"{decoded.code}: {decoded.message}",
    ]
    if decoded.details:
        lines.append("Details:")
        lines.extend(d.render() for d in decoded.details)
    return "\n".join(lines)


def format_error_response(status_line: str, body: Union[str, bytes, None]) -> str:
    return format_error(status_line, decode_error_body(body))


def portal_query_url(portal_url: str, query_text: str) -> str:
    """
    Deep link opening the query in the portal's Resource Graph explorer.
    """
    return portal_url.rstrip("/") + PORTAL_QUERY_BLADE + quote(query_text, safe="")


def _parse_time(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    raw = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return to_utc(datetime.fromisoformat(raw))
    except ValueError:
        return value


def _strict(kind: str, accept: Callable[[Any], bool], values: Sequence[Any]) -> Tuple[Any, ...]:
    for v in values:
        if v is not None and not accept(v):
            raise ValueError(f"{kind} column holds a {type(v).__name__} value: {v!r}")
    return tuple(values)


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _convert_column(column_type: str, values: Sequence[Any]) -> Tuple[str, Tuple[Any, ...]]:
    kind = (column_type or "").lower()
    if kind in _INT_TYPES:
        return "int", _strict(kind, _is_int, values)
    if kind in _FLOAT_TYPES:
        return "float", tuple(None if v is None else float(v) for v in _strict(kind, _is_number, values))
    if kind in _BOOL_TYPES:
        return "bool", _strict(kind, lambda v: isinstance(v, bool), values)
    if kind in _TIME_TYPES:
        return "time", tuple(None if v is None else _parse_time(v) for v in values)
    if kind not in _STRING_TYPES:
        # object, dynamic, array and unknown types are rendered as JSON text
        return "string", tuple(
            None if v is None else v if isinstance(v, str) else json.dumps(v, sort_keys=True) for v in values
        )
    return "string", tuple(None if v is None else str(v) for v in values)


def table_to_frame(name: str, columns: Sequence[Dict[str, Any]], rows: Sequence[Sequence[Any]]) -> Frame:
    """
    Convert a Resource Graph 'table' payload (columns + rows) into a Frame.
    """
    fields: List[Field] = []
    for idx, column in enumerate(columns):
        if not isinstance(column, dict) or not isinstance(column.get("name"), str):
            raise ValueError(f"invalid column definition at index {idx}")
        values = [row[idx] if idx < len(row) else None for row in rows]
        field_type, converted = _convert_column(str(column.get("type") or "string"), values)
        fields.append(Field(name=column["name"], type=field_type, values=converted))
    return Frame(name=name, fields=tuple(fields))


def parse_success_body(body: Union[str, bytes, None]) -> Dict[str, Any]:
    doc = json.loads(_body_text(body))
    if not isinstance(doc, dict):
        raise ValueError("response body must be a JSON object")
    data = doc.get("data")
    if not isinstance(data, dict):
        raise ValueError("response is missing the 'data' table")
    columns = data.get("columns")
    rows = data.get("rows")
    if not isinstance(columns, list) or not isinstance(rows, list):
        raise ValueError("response 'data' must carry 'columns' and 'rows' lists")
    if not all(isinstance(r, list) for r in rows):
        raise ValueError("response rows must be lists")
    return doc


class PageError(Exception):
    """A non-2xx or undecodable response page, already rendered as a diagnostic."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message

    def to_result(self, ref_id: str) -> QueryResult:
        return QueryResult(ref_id=ref_id, error=self.message, status=self.status)


def decode_page(status_code: int, status_line: str, body: Union[str, bytes, None]) -> Dict[str, Any]:
    """
    Check the status of one response and decode its table document.
    Raises PageError carrying the rendered diagnostic on any failure.
    """
    if not 200 <= status_code < 300:
        raise PageError(status_code, format_error_response(status_line, body))
    try:
        return parse_success_body(body)
    except (ValueError, RecursionError) as e:
        raise PageError(status_code, f"failed to decode response, status: {status_line}: {e}") from e


def success_frame(
    query: InterpolatedQuery,
    docs: Sequence[Dict[str, Any]],
    portal_url: str,
    *,
    truncated: bool = False,
) -> Frame:
    """
    Build the annotated frame for one query from one or more response pages.
    truncated marks a result cut short by the page limit.
    """
    first = docs[0]
    columns = first["data"]["columns"]
    rows: List[Sequence[Any]] = []
    for doc in docs:
        rows.extend(doc["data"]["rows"])
    frame = table_to_frame(query.ref_id, columns, rows)
    frame.meta.update(
        {
            "executedQueryString": query.interpolated_query,
            "resultFormat": query.result_format,
            "totalRecords": first.get("totalRecords"),
            "count": len(rows),
            "resultTruncated": "true" if truncated else first.get("resultTruncated"),
        }
    )
    return add_config_links(frame, portal_query_url(portal_url, query.interpolated_query))


def pages_to_result(
    query: InterpolatedQuery,
    docs: Sequence[Dict[str, Any]],
    portal_url: str,
    *,
    status_code: int,
    status_line: str,
    truncated: bool = False,
) -> QueryResult:
    """
    Turn decoded pages into a QueryResult; a table that cannot be converted
    becomes an error result rather than an exception.
    """
    try:
        frame = success_frame(query, docs, portal_url, truncated=truncated)
    except (ValueError, TypeError, IndexError) as e:
        return PageError(status_code, f"failed to decode response, status: {status_line}: {e}").to_result(
            query.ref_id
        )
    return QueryResult(ref_id=query.ref_id, frame=frame, status=status_code)


def normalize_response(
    status_code: int,
    status_line: str,
    body: Union[str, bytes, None],
    query: InterpolatedQuery,
    portal_url: str,
) -> QueryResult:
    """
    Turn a single HTTP response into a QueryResult for the query's ref id.
    """
    try:
        doc = decode_page(status_code, status_line, body)
    except PageError as e:
        return e.to_result(query.ref_id)
    return pages_to_result(query, [doc], portal_url, status_code=status_code, status_line=status_line)
