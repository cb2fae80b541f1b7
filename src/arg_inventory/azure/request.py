from __future__ import annotations

import json
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import requests

from ..query.builder import InterpolatedQuery

PRODUCT_NAME = "arg-inventory"
API_VERSION = "2021-03-01"
RESOURCES_PATH = "/providers/Microsoft.ResourceGraph/resources"
API_RESULT_FORMAT = "table"


def _product_version() -> str:
    try:
        return version(PRODUCT_NAME)
    except PackageNotFoundError:
        return ""


USER_AGENT = f"{PRODUCT_NAME}/{_product_version()}"


def normalize_url(url: str) -> str:
    """
    Ensure the URL carries a path; an empty path becomes '/'.
    """
    parts = urlsplit(url)
    path = parts.path or "/"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def resource_graph_url(api_url: str) -> str:
    return api_url.rstrip("/") + RESOURCES_PATH


def build_request_body(query: InterpolatedQuery, skip_token: Optional[str] = None) -> bytes:
    options: Dict[str, Any] = {"resultFormat": API_RESULT_FORMAT}
    if skip_token:
        options["$skipToken"] = skip_token
    body: Dict[str, Any] = {
        "query": query.interpolated_query,
        "options": options,
    }
    if query.subscriptions:
        body["subscriptions"] = list(query.subscriptions)
    return json.dumps(body).encode("utf-8")


def create_request(
    url: str,
    body: bytes,
    *,
    params: Optional[Mapping[str, str]] = None,
) -> requests.PreparedRequest:
    """
    Build a POST request for the Resource Graph endpoint without sending it.
    The body is passed through untouched.
    """
    req = requests.Request(
        method="POST",
        url=normalize_url(url),
        headers={
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        },
        data=body,
        params=dict(params) if params else None,
    )
    return req.prepare()
