from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from arg_inventory.normalize.frame import PORTAL_LINK_TITLE, DataLink, Field, Frame, add_config_links
from arg_inventory.normalize.response import (
    ErrorDetail,
    ErrorEnvelope,
    PageError,
    RawErrorBody,
    decode_error_body,
    decode_page,
    format_error,
    format_error_response,
    normalize_response,
    pages_to_result,
    portal_query_url,
)
from arg_inventory.query.builder import InterpolatedQuery

STATUS = "400 Bad Request"

BODY_SHORT = """{
    "error":{
       "code":"BadRequest",
       "message":"Please provide below info when asking for support: timestamp = 2022-01-17T15:50:07.9782199Z, correlationId = 7ba435e5-6371-458f-a1b5-1c7ffdba6ff4.",
       "details":[
          {
             "code":"InvalidQuery",
             "message":"Query is invalid. Please refer to the documentation for the Azure Resource Graph service and fix the error before retrying."
          },
          {
             "code":"UnknownFunction",
             "message":"Unknown function: 'cout'."
          }
       ]
    }
 }"""

BODY_WITH_LINES = """{
    "error":
    {
        "code": "BadRequest",
        "message": "Please provide below info when asking for support: timestamp = 2021-06-04T05:09:13.1870573Z, correlationId = f1c5d97f-26db-4bdc-b023-1f0a862004db.",
        "details":
        [
            {
                "code": "InvalidQuery",
                "message": "Query is invalid. Please refer to the documentation for the Azure Resource Graph service and fix the error before retrying."
            },
            {
                "code": "ParserFailure",
                "message": "ParserFailure",
                "line": 2,
                "token": "<"
            },
            {
                "code": "ParserFailure",
                "message": "ParserFailure",
                "line": 4,
                "characterPositionInLine": 23,
                "token": "<"
            }
        ]
    }
}"""


def _query(text: str = "resources | take 2", result_format: str = "table") -> InterpolatedQuery:
    return InterpolatedQuery(ref_id="A", result_format=result_format, url="", json="{}", interpolated_query=text)


def test_short_error_lists_detail_messages() -> None:
    expected = (
        "request failed, status: 400 Bad Request\n"
        "BadRequest: Please provide below info when asking for support: timestamp = 2022-01-17T15:50:07.9782199Z,"
        " correlationId = 7ba435e5-6371-458f-a1b5-1c7ffdba6ff4.\n"
        "Details:\n"
        "Query is invalid. Please refer to the documentation for the Azure Resource Graph service and fix the error"
        " before retrying.\n"
        "Unknown function: 'cout'."
    )
    assert format_error_response(STATUS, BODY_SHORT) == expected


def test_error_with_lines_renders_positions() -> None:
    expected = (
        "request failed, status: 400 Bad Request\n"
        "BadRequest: Please provide below info when asking for support: timestamp = 2021-06-04T05:09:13.1870573Z,"
        " correlationId = f1c5d97f-26db-4bdc-b023-1f0a862004db.\n"
        "Details:\n"
        "Query is invalid. Please refer to the documentation for the Azure Resource Graph service and fix the error"
        " before retrying.\n"
        'ParserFailure: line 2, "<"\n'
        'ParserFailure: line 4, pos 23, "<"'
    )
    assert format_error_response(STATUS, BODY_WITH_LINES.encode("utf-8")) == expected


def test_bad_request_with_two_details_has_exact_line_layout() -> None:
    body = json.dumps(
        {
            "error": {
                "code": "BadRequest",
                "message": "top",
                "details": [
                    {"code": "InvalidQuery", "message": "first"},
                    {"code": "ParserFailure", "message": "second", "line": 3, "characterPositionInLine": 7, "token": "|"},
                ],
            }
        }
    )
    lines = format_error_response(STATUS, body).split("\n")
    assert lines == [
        "request failed, status: 400 Bad Request",
        "BadRequest: top",
        "Details:",
        "first",
        'ParserFailure: line 3, pos 7, "|"',
    ]


def test_envelope_without_details_has_no_details_line() -> None:
    body = '{"error": {"code": "Forbidden", "message": "no access"}}'
    assert format_error_response("403 Forbidden", body) == "request failed, status: 403 Forbidden\nForbidden: no access"


@pytest.mark.parametrize(
    "body",
    [
        '{\n\t\t"error":"I m an expected field but of wrong type ! "\n\t}',
        '{\n\t\t"myerror":"I m completly unexpected and you won\'t know how to parse me ! ",\n\t\t"code":"boom"\n\t}',
        "<html>Bad Gateway</html>",
        "",
        "[]",
        '{"error": {"code": 400, "message": "typed wrong"}}',
        '{"error": {"code": "X", "message": "m", "details": {"code": "Y"}}}',
        '{"error": {"code": "X", "message": "m", "details": ["just text"]}}',
        '{"error": {"code": "X", "message": "m", "details": [{"line": "two"}]}}',
        '{"error": {}}',
    ],
)
def test_unexpected_shapes_fall_back_to_raw_body(body: str) -> None:
    assert format_error_response(STATUS, body) == f"request failed, status: {STATUS}, body: {body}"


def test_decode_returns_tagged_variants() -> None:
    decoded = decode_error_body(BODY_WITH_LINES)
    assert isinstance(decoded, ErrorEnvelope)
    assert decoded.code == "BadRequest"
    assert decoded.details[2] == ErrorDetail(
        code="ParserFailure", message="ParserFailure", line=4, character_position_in_line=23, token="<"
    )
    assert decode_error_body(b"\xff\xfe not json") == RawErrorBody(body="\ufffd\ufffd not json")
    assert format_error("500 Internal Server Error", RawErrorBody(body="x")) == (
        "request failed, status: 500 Internal Server Error, body: x"
    )


def test_decode_survives_deeply_nested_json() -> None:
    body = "[" * 100_000 + "]" * 100_000
    assert isinstance(decode_error_body(body), RawErrorBody)


def test_add_config_links_sets_one_link_per_field() -> None:
    frame = Frame(name="A", fields=(Field(name="name", values=("a",)), Field(name="count", type="int", values=(1,))))
    linked = add_config_links(frame, "http://ds")
    expected = DataLink(title=PORTAL_LINK_TITLE, url="http://ds", target_blank=True)
    assert [f.links for f in linked.fields] == [(expected,), (expected,)]
    assert frame.fields[0].links == ()
    assert linked.fields[0].values == ("a",)


def test_portal_query_url_escapes_query() -> None:
    url = portal_query_url("https://portal.azure.com/", "resources | take 1")
    assert url == "https://portal.azure.com/#blade/HubsExtension/ArgQueryBlade/query/resources%20%7C%20take%201"


def test_success_response_becomes_linked_frame() -> None:
    body = {
        "totalRecords": 2,
        "count": 2,
        "resultTruncated": "false",
        "data": {
            "columns": [
                {"name": "name", "type": "string"},
                {"name": "cores", "type": "integer"},
                {"name": "ratio", "type": "number"},
                {"name": "enabled", "type": "boolean"},
                {"name": "created", "type": "datetime"},
                {"name": "tags", "type": "object"},
            ],
            "rows": [
                ["vm1", 4, 0.5, True, "2022-01-17T15:50:07Z", {"env": "prod"}],
                ["vm2", None, 1, False, None, None],
            ],
        },
    }
    res = normalize_response(200, "200 OK", json.dumps(body), _query(), "https://portal.azure.com")
    assert res.ok
    assert res.status == 200
    frame = res.frame
    assert frame is not None
    assert frame.name == "A"
    assert [f.type for f in frame.fields] == ["string", "int", "float", "bool", "time", "string"]
    assert frame.rows()[0] == (
        "vm1",
        4,
        0.5,
        True,
        datetime(2022, 1, 17, 15, 50, 7, tzinfo=timezone.utc),
        '{"env": "prod"}',
    )
    assert frame.rows()[1] == ("vm2", None, 1.0, False, None, None)
    assert frame.meta["executedQueryString"] == "resources | take 2"
    assert frame.meta["totalRecords"] == 2
    links = {f.links for f in frame.fields}
    assert len(links) == 1
    (link,) = links.pop()
    assert link.url.startswith("https://portal.azure.com/#blade/HubsExtension/ArgQueryBlade/query/")


def test_error_status_becomes_error_result() -> None:
    res = normalize_response(400, STATUS, BODY_SHORT, _query(), "https://portal.azure.com")
    assert not res.ok
    assert res.frame is None
    assert res.status == 400
    assert res.error is not None and res.error.startswith("request failed, status: 400 Bad Request\nBadRequest:")


@pytest.mark.parametrize("body", ["not json", "{}", '{"data": {"columns": [], "rows": {}}}', '{"data": {"columns": [{"type": "string"}], "rows": [["a"]]}}'])
def test_undecodable_success_body_is_an_error_result(body: str) -> None:
    res = normalize_response(200, "200 OK", body, _query(), "https://portal.azure.com")
    assert res.frame is None
    assert res.error is not None and res.error.startswith("failed to decode response, status: 200 OK")


@pytest.mark.parametrize(
    "column_type, value",
    [
        ("boolean", "false"),
        ("boolean", 0),
        ("integer", 4.5),
        ("integer", "4"),
        ("long", True),
        ("real", "0.5"),
    ],
)
def test_values_of_the_wrong_type_are_rejected(column_type: str, value) -> None:
    body = {"data": {"columns": [{"name": "v", "type": column_type}], "rows": [[value]]}}
    res = normalize_response(200, "200 OK", json.dumps(body), _query(), "https://portal.azure.com")
    assert res.frame is None
    assert res.error is not None and res.error.startswith("failed to decode response, status: 200 OK: ")


def test_decode_page_raises_rendered_diagnostics() -> None:
    with pytest.raises(PageError) as info:
        decode_page(400, STATUS, BODY_SHORT)
    assert info.value.status == 400
    assert info.value.message.startswith("request failed, status: 400 Bad Request\nBadRequest:")
    with pytest.raises(PageError) as info:
        decode_page(200, "200 OK", "nope")
    assert info.value.message.startswith("failed to decode response, status: 200 OK: ")
    assert decode_page(200, "200 OK", '{"data": {"columns": [], "rows": []}}')["data"]["rows"] == []


def test_truncated_pages_mark_the_frame() -> None:
    doc = {"resultTruncated": "false", "data": {"columns": [{"name": "n", "type": "string"}], "rows": [["a"]]}}
    res = pages_to_result(
        _query(), [doc], "https://portal.azure.com", status_code=200, status_line="200 OK", truncated=True
    )
    assert res.ok
    assert res.frame.meta["resultTruncated"] == "true"
