from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from arg_inventory.query.builder import DataQuery, InterpolatedQuery, build_queries, parse_raw_query
from arg_inventory.util.errors import QueryValidationError
from arg_inventory.util.time import TimeRange

FROM = datetime(2018, 3, 15, 13, 0, 0, tzinfo=timezone.utc)
TR = TimeRange(start=FROM, end=FROM + timedelta(minutes=34))

MACRO_QUERY_JSON = """{
    "queryType": "Azure Resource Graph",
    "azureResourceGraph": {
        "query":        "resources | where $__contains(name,'res1','res2')",
        "resultFormat": "table"
    }
}"""


def _model(query: str, result_format: str | None = "table", **extra) -> dict:
    arg = {"query": query}
    if result_format is not None:
        arg["resultFormat"] = result_format
    return {"queryType": "Azure Resource Graph", "azureResourceGraph": arg, **extra}


def test_query_with_macros_is_interpolated() -> None:
    queries = build_queries([DataQuery(ref_id="A", json=MACRO_QUERY_JSON.encode())], TR)
    assert queries == [
        InterpolatedQuery(
            ref_id="A",
            result_format="table",
            url="",
            json=MACRO_QUERY_JSON.encode(),
            interpolated_query="resources | where ['name'] in ('res1','res2')",
        )
    ]


def test_batch_preserves_order_ref_ids_and_result_format() -> None:
    inputs = [
        DataQuery(ref_id="C", json=_model("resources | take 1", "time_series")),
        DataQuery(ref_id="A", json=json.dumps(_model("resources | take 2"))),
        DataQuery(ref_id="B", json=_model("resources | take 3", None)),
    ]
    built = build_queries(inputs, TR, max_workers=3)
    assert [q.ref_id for q in built] == ["C", "A", "B"]
    assert [q.result_format for q in built] == ["time_series", "table", "table"]
    assert [q.interpolated_query for q in built] == [
        "resources | take 1",
        "resources | take 2",
        "resources | take 3",
    ]


def test_url_and_subscriptions_are_carried() -> None:
    built = build_queries(
        [DataQuery(ref_id="A", json=_model("resources", subscriptions=["sub-1", " sub-2 ", ""]))],
        TR,
        url="https://management.azure.com/providers/Microsoft.ResourceGraph/resources",
    )
    assert built[0].url.endswith("/resources")
    assert built[0].subscriptions == ("sub-1", "sub-2")


def test_raw_query_keeps_original_payload() -> None:
    raw = parse_raw_query(DataQuery(ref_id="A", json=MACRO_QUERY_JSON))
    assert raw.json == MACRO_QUERY_JSON
    assert raw.query == "resources | where $__contains(name,'res1','res2')"
    assert raw.result_format == "table"


@pytest.mark.parametrize(
    "payload, fragment",
    [
        ("{not json", "failed to decode"),
        ("[1, 2]", "JSON object"),
        ({"queryType": "Azure Resource Graph"}, "azureResourceGraph"),
        ({"azureResourceGraph": "resources"}, "azureResourceGraph"),
        ({"azureResourceGraph": {"query": 42}}, "query"),
        ({"azureResourceGraph": {"query": "x", "resultFormat": "logs"}}, "resultFormat"),
        ({"azureResourceGraph": {"query": "x"}, "subscriptions": "sub-1"}, "subscriptions"),
    ],
)
def test_invalid_definitions_carry_ref_id(payload, fragment: str) -> None:
    with pytest.raises(QueryValidationError) as info:
        parse_raw_query(DataQuery(ref_id="Q7", json=payload))
    assert info.value.ref_id == "Q7"
    assert "Q7" in str(info.value)
    assert fragment in str(info.value)


def test_one_bad_definition_fails_the_whole_batch() -> None:
    inputs = [
        DataQuery(ref_id="A", json=_model("resources")),
        DataQuery(ref_id="B", json="{"),
    ]
    with pytest.raises(QueryValidationError) as info:
        build_queries(inputs, TR)
    assert info.value.ref_id == "B"


def test_duplicate_and_missing_ref_ids_are_rejected() -> None:
    with pytest.raises(QueryValidationError):
        build_queries([DataQuery("A", _model("x")), DataQuery("A", _model("y"))], TR)
    with pytest.raises(QueryValidationError):
        build_queries([DataQuery("", _model("x"))], TR)


def test_empty_batch_builds_nothing() -> None:
    assert build_queries([], TR) == []
