from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter

from ..logging import get_logger
from ..normalize.response import PageError, QueryResult, decode_page, pages_to_result
from ..query.builder import DataQuery, InterpolatedQuery, build_queries
from ..util.concurrency import parallel_map_ordered
from ..util.errors import map_transport_error
from ..util.pagination import paginate_pages
from ..util.time import TimeRange
from .clouds import CloudConfig, resolve_cloud
from .request import API_VERSION, build_request_body, create_request, resource_graph_url

LOG = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_PAGES = 10


def status_line(resp: requests.Response) -> str:
    reason = resp.reason or ""
    return f"{resp.status_code} {reason}".strip()


def make_session(pool_size: int = 10) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class ResourceGraphClient:
    """
    Dispatches interpolated queries to the Resource Graph endpoint of one cloud.

    The cloud is resolved at construction, so an unsupported identifier fails
    before any query is built. One request is sent per query (plus one per
    extra $skipToken page); results come back in input order.
    """

    def __init__(
        self,
        cloud: str,
        *,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        api_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_workers: int = 1,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> None:
        self.cloud: CloudConfig = resolve_cloud(cloud)
        self.url = resource_graph_url(api_url or self.cloud.api_url)
        self.token = token
        self.session = session or make_session(max(max_workers, 1))
        self.timeout = timeout
        self.max_workers = max_workers
        self.max_pages = max_pages

    def build(
        self,
        queries: Sequence[DataQuery],
        time_range: TimeRange,
        params: Optional[Mapping[str, str]] = None,
    ) -> List[InterpolatedQuery]:
        return build_queries(queries, time_range, params, url=self.url, max_workers=self.max_workers)

    def prepare(self, query: InterpolatedQuery, skip_token: Optional[str] = None) -> requests.PreparedRequest:
        req = create_request(
            query.url or self.url,
            build_request_body(query, skip_token=skip_token),
            params={"api-version": API_VERSION},
        )
        if self.token:
            req.headers["Authorization"] = f"Bearer {self.token}"
        return req

    def _send(self, query: InterpolatedQuery, skip_token: Optional[str]) -> requests.Response:
        req = self.prepare(query, skip_token)
        try:
            return self.session.send(req, timeout=self.timeout)
        except Exception as e:
            mapped = map_transport_error(e, f"Resource Graph request failed for query {query.ref_id!r}")
            if mapped:
                raise mapped from e
            raise

    def execute_query(self, query: InterpolatedQuery) -> QueryResult:
        """
        Run one query, following $skipToken pages, and normalize the outcome.
        Transport failures raise TransportError; remote failures are returned
        as an error QueryResult.
        """
        LOG.debug(
            "Dispatching query",
            extra={"step": "query", "phase": "start", "ref_id": query.ref_id, "url": query.url or self.url},
        )
        last_status = 0
        last_line = ""
        leftover: List[str] = []

        def fetch(skip_token: Optional[str]) -> Tuple[Dict[str, Any], Optional[str]]:
            nonlocal last_status, last_line
            resp = self._send(query, skip_token)
            last_status, last_line = resp.status_code, status_line(resp)
            doc = decode_page(last_status, last_line, resp.content)
            next_token = doc.get("$skipToken")
            return doc, next_token if isinstance(next_token, str) else None

        try:
            docs = list(paginate_pages(fetch, max_pages=self.max_pages, on_truncated=leftover.append))
        except PageError as e:
            LOG.warning(
                "Query failed",
                extra={"step": "query", "phase": "error", "ref_id": query.ref_id, "status": e.status},
            )
            return e.to_result(query.ref_id)
        if leftover:
            LOG.warning(
                "Result truncated at page limit",
                extra={"step": "query", "phase": "truncated", "ref_id": query.ref_id, "max_pages": self.max_pages},
            )
        result = pages_to_result(
            query,
            docs,
            self.cloud.portal_url,
            status_code=last_status,
            status_line=last_line,
            truncated=bool(leftover),
        )
        if result.frame is not None:
            LOG.info(
                "Query complete",
                extra={
                    "step": "query",
                    "phase": "complete",
                    "ref_id": query.ref_id,
                    "rows": result.frame.row_count,
                    "pages": len(docs),
                },
            )
        return result

    def execute(self, queries: Sequence[InterpolatedQuery]) -> List[QueryResult]:
        return parallel_map_ordered(self.execute_query, queries, max_workers=self.max_workers)

    def query(
        self,
        queries: Sequence[DataQuery],
        time_range: TimeRange,
        params: Optional[Mapping[str, str]] = None,
    ) -> List[QueryResult]:
        """
        Build, dispatch and normalize a batch. Validation and transport errors
        abort the batch; remote errors are reported per ref id.
        """
        return self.execute(self.build(queries, time_range, params))


def dump_request(req: requests.PreparedRequest) -> Dict[str, Any]:
    """
    JSON-friendly view of a prepared request with the bearer token masked.
    """
    headers = dict(req.headers)
    if "Authorization" in headers:
        headers["Authorization"] = "Bearer <redacted>"
    body = req.body
    if isinstance(body, bytes):
        body = body.decode("utf-8", "replace")
    try:
        parsed_body: Any = json.loads(body) if body else None
    except ValueError:
        parsed_body = body
    return {"method": req.method, "url": req.url, "headers": headers, "body": parsed_body}
