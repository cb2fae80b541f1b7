from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..logging import get_logger
from ..util.concurrency import parallel_map_ordered
from ..util.errors import QueryValidationError
from ..util.time import TimeRange
from .macros import interpolate

LOG = get_logger(__name__)

QUERY_TYPE = "Azure Resource Graph"
MODEL_KEY = "azureResourceGraph"

RESULT_FORMAT_TABLE = "table"
RESULT_FORMAT_TIME_SERIES = "time_series"
RESULT_FORMATS = {RESULT_FORMAT_TABLE, RESULT_FORMAT_TIME_SERIES}

QueryJSON = Union[str, bytes, Mapping[str, Any]]


@dataclass(frozen=True)
class DataQuery:
    """
    One inbound query definition: the caller's ref id plus the query model JSON.
    """

    ref_id: str
    json: QueryJSON


@dataclass(frozen=True)
class RawQuery:
    ref_id: str
    result_format: str
    query: str
    json: QueryJSON
    subscriptions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InterpolatedQuery:
    ref_id: str
    result_format: str
    url: str
    json: QueryJSON = field(repr=False)
    interpolated_query: str
    subscriptions: Tuple[str, ...] = ()


def _decode_model(data_query: DataQuery) -> Dict[str, Any]:
    payload = data_query.json
    if isinstance(payload, Mapping):
        return dict(payload)
    try:
        decoded = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise QueryValidationError(f"failed to decode query model: {e}", ref_id=data_query.ref_id) from e
    if not isinstance(decoded, dict):
        raise QueryValidationError("query model must be a JSON object", ref_id=data_query.ref_id)
    return decoded


def parse_raw_query(data_query: DataQuery) -> RawQuery:
    """
    Validate one query definition and extract the Resource Graph model.
    """
    ref_id = data_query.ref_id
    model = _decode_model(data_query)

    query_type = model.get("queryType")
    if query_type not in (None, "", QUERY_TYPE):
        LOG.warning(
            "Unexpected queryType; treating as Resource Graph query",
            extra={"step": "build", "phase": "validate", "ref_id": ref_id, "query_type": str(query_type)},
        )

    arg = model.get(MODEL_KEY)
    if not isinstance(arg, dict):
        raise QueryValidationError(f"missing '{MODEL_KEY}' object", ref_id=ref_id)
    query = arg.get("query")
    if not isinstance(query, str):
        raise QueryValidationError(f"'{MODEL_KEY}.query' must be a string", ref_id=ref_id)

    result_format = arg.get("resultFormat") or RESULT_FORMAT_TABLE
    if not isinstance(result_format, str) or result_format not in RESULT_FORMATS:
        raise QueryValidationError(
            f"'{MODEL_KEY}.resultFormat' must be one of: {', '.join(sorted(RESULT_FORMATS))}", ref_id=ref_id
        )

    subscriptions = model.get("subscriptions")
    if subscriptions is None:
        subscriptions = []
    if not isinstance(subscriptions, list) or not all(isinstance(s, str) for s in subscriptions):
        raise QueryValidationError("'subscriptions' must be a list of strings", ref_id=ref_id)

    return RawQuery(
        ref_id=ref_id,
        result_format=result_format,
        query=query,
        json=data_query.json,
        subscriptions=tuple(s.strip() for s in subscriptions if s.strip()),
    )


def interpolate_query(
    raw: RawQuery,
    time_range: TimeRange,
    params: Optional[Mapping[str, str]] = None,
    *,
    url: str = "",
) -> InterpolatedQuery:
    return InterpolatedQuery(
        ref_id=raw.ref_id,
        result_format=raw.result_format,
        url=url,
        json=raw.json,
        interpolated_query=interpolate(raw.query, time_range, params),
        subscriptions=raw.subscriptions,
    )


def build_queries(
    queries: Sequence[DataQuery],
    time_range: TimeRange,
    params: Optional[Mapping[str, str]] = None,
    *,
    url: str = "",
    max_workers: int = 1,
) -> List[InterpolatedQuery]:
    """
    Validate and interpolate a batch of query definitions.

    Returns one InterpolatedQuery per input, in input order. The first invalid
    definition aborts the whole batch with QueryValidationError.
    """
    seen: set[str] = set()
    for q in queries:
        if not q.ref_id:
            raise QueryValidationError("query is missing a refId")
        if q.ref_id in seen:
            raise QueryValidationError("duplicate refId in batch", ref_id=q.ref_id)
        seen.add(q.ref_id)

    raw_queries = [parse_raw_query(q) for q in queries]
    built = parallel_map_ordered(
        lambda raw: interpolate_query(raw, time_range, params, url=url),
        raw_queries,
        max_workers=max_workers,
    )
    LOG.debug(
        "Built queries",
        extra={"step": "build", "phase": "complete", "count": len(built)},
    )
    return built
