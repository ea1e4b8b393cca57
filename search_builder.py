"""
Turns simple search parameters into the structured filter payload of the
people-search API, and parses its (variable) response envelopes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from location_resolver import LocationResolver, ResolvedLocation, SuggestionClient, SEARCH_PROVIDER
from pipeline_core import AdmissionDenied, ProviderError, RetryPolicy, _http_request, rapidapi_headers

INCLUDED = "INCLUDED"


@dataclass(frozen=True)
class SearchFilterValue:
    id: str
    text: str
    selection_type: str = INCLUDED

    def to_payload(self) -> Dict[str, str]:
        return {"id": self.id, "text": self.text, "selectionType": self.selection_type}


@dataclass
class SearchFilter:
    type: str
    values: List[SearchFilterValue] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "values": [value.to_payload() for value in self.values]}


@dataclass
class SearchRequest:
    filters: List[SearchFilter] = field(default_factory=list)
    keywords: str = ""
    page: int = 1
    limit: Optional[int] = None
    requested_location: Optional[str] = None
    resolved_location: Optional[ResolvedLocation] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "filters": [item.to_payload() for item in self.filters],
            "keywords": self.keywords,
            "page": self.page,
        }
        if self.limit:
            payload["limit"] = self.limit
        return payload

    def filter_types(self) -> List[str]:
        return [item.type for item in self.filters]

    def for_page(self, page: int) -> "SearchRequest":
        return SearchRequest(
            filters=self.filters,
            keywords=self.keywords,
            page=page,
            limit=self.limit,
            requested_location=self.requested_location,
            resolved_location=self.resolved_location,
        )


def headcount_code(count: int) -> str:
    """Company-size bucket letter; A is self-employed."""
    if count <= 0:
        return "A"
    if count <= 10:
        return "B"
    if count <= 50:
        return "C"
    if count <= 200:
        return "D"
    if count <= 500:
        return "E"
    if count <= 1000:
        return "F"
    if count <= 5000:
        return "G"
    if count <= 10000:
        return "H"
    return "I"


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


class SearchRequestBuilder:
    """Build a SearchRequest, resolving location/company/industry to provider ids."""

    def __init__(
        self,
        resolver: LocationResolver,
        *,
        company_lookup: Optional[SuggestionClient] = None,
        industry_lookup: Optional[SuggestionClient] = None,
        governor: Any = None,
        allow_discovery: bool = True,
    ):
        self.resolver = resolver
        self.company_lookup = company_lookup
        self.industry_lookup = industry_lookup
        self.governor = governor
        self.allow_discovery = allow_discovery
        self._suggestion_cache: Dict[Tuple[str, str], Optional[Tuple[str, str]]] = {}

    def _suggest(self, kind: str, client: Optional[SuggestionClient], query: str) -> Optional[Tuple[str, str]]:
        """First (exact match preferred) suggestion as ``(id, text)``; None on miss or failure."""
        if client is None or not query:
            return None
        cache_key = (kind, query.strip().lower())
        if cache_key in self._suggestion_cache:
            return self._suggestion_cache[cache_key]
        try:
            if self.governor is not None:
                suggestions = self.governor.call(client.provider, client.lookup, query)
            else:
                suggestions = client.lookup(query)
        except (ProviderError, AdmissionDenied) as exc:
            logging.warning("%s suggestions failed for %r: %s", kind.capitalize(), query, exc)
            return None
        chosen = None
        for suggestion in suggestions:
            if suggestion.display_text.strip().lower() == query.strip().lower():
                chosen = suggestion
                break
        if chosen is None and suggestions:
            chosen = suggestions[0]
        result = (chosen.id, chosen.display_text or query) if chosen else None
        self._suggestion_cache[cache_key] = result
        return result

    def build(self, params: Dict[str, Any]) -> SearchRequest:
        request = SearchRequest(page=int(params.get("page") or 1), limit=params.get("limit"))
        keyword_parts: List[str] = []
        for name in ("first_name", "last_name"):
            if params.get(name):
                keyword_parts.append(str(params[name]).strip())
        title = params.get("title_keywords") or params.get("title")
        if title:
            keyword_parts.append(str(title).strip())

        location = str(params.get("location") or "").strip()
        if location:
            request.requested_location = location
            resolved = self.resolver.resolve_hierarchical(location, allow_discovery=self.allow_discovery)
            if resolved is not None:
                request.resolved_location = resolved
                request.filters.append(
                    SearchFilter("REGION", [SearchFilterValue(resolved.location_id, resolved.display_name)])
                )
            else:
                logging.warning("Location %r unresolved; searching by keyword with post-filtering", location)
                keyword_parts.append(location)

        company = str(params.get("current_company") or "").strip()
        if company:
            match = self._suggest("company", self.company_lookup, company)
            if match:
                company_id, text = match
                urn = company_id if company_id.startswith("urn:li:organization:") else f"urn:li:organization:{company_id}"
                request.filters.append(SearchFilter("CURRENT_COMPANY", [SearchFilterValue(urn, text)]))
            else:
                keyword_parts.append(company)

        industry = str(params.get("industry") or "").strip()
        if industry:
            match = self._suggest("industry", self.industry_lookup, industry)
            if match:
                request.filters.append(SearchFilter("INDUSTRY", [SearchFilterValue(match[0], match[1])]))
            else:
                keyword_parts.append(industry)

        if _truthy(params.get("changed_jobs_90_days")):
            request.filters.append(
                SearchFilter("CHANGED_JOBS_90_DAYS", [SearchFilterValue("true", "Changed jobs in last 90 days")])
            )

        headcount_values: List[SearchFilterValue] = []
        for name, label in (("company_headcount_min", "Min"), ("company_headcount_max", "Max")):
            raw = params.get(name)
            if raw in (None, ""):
                continue
            try:
                count = int(raw)
            except (TypeError, ValueError):
                logging.warning("Ignoring non-numeric %s=%r", name, raw)
                continue
            code = headcount_code(count)
            if all(value.id != code for value in headcount_values):
                headcount_values.append(SearchFilterValue(code, f"{label}: {count}"))
        if headcount_values:
            request.filters.append(SearchFilter("COMPANY_HEADCOUNT", headcount_values))

        if params.get("keywords"):
            keyword_parts.append(str(params["keywords"]).strip())

        seen: List[str] = []
        for part in keyword_parts:
            if part and part not in seen:
                seen.append(part)
        request.keywords = " ".join(seen)
        logging.debug("Built search request: filters=%s keywords=%r", request.filter_types(), request.keywords)
        return request


# ---------------------------------------------------------------------------
# Response envelopes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResponseEnvelope:
    """One documented response shape: where the lead list lives."""

    name: str
    leads_path: Tuple[str, ...]

    def extract(self, payload: Any) -> Optional[List[Any]]:
        node = payload
        for part in self.leads_path:
            if not isinstance(node, dict):
                return None
            node = node.get(part)
        if isinstance(node, list) and node:
            return node
        return None


# Tried in this order; the first that yields a non-empty list wins.
ENVELOPE_VARIANTS: Tuple[ResponseEnvelope, ...] = (
    ResponseEnvelope("response.data", ("response", "data")),
    ResponseEnvelope("response.results", ("response", "results")),
    ResponseEnvelope("response.leads", ("response", "leads")),
    ResponseEnvelope("data.response.data", ("data", "response", "data")),
    ResponseEnvelope("data.data", ("data", "data")),
    ResponseEnvelope("data", ("data",)),
    ResponseEnvelope("response", ("response",)),
    ResponseEnvelope("leads", ("leads",)),
    ResponseEnvelope("results", ("results",)),
    ResponseEnvelope("top_level", ()),
)

PAGINATION_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("response", "pagination"),
    ("data", "response", "pagination"),
    ("pagination",),
    ("data", "pagination"),
)


@dataclass
class SearchPage:
    leads: List[Dict[str, Any]]
    total: int
    count: int
    start: int
    envelope: str

    @property
    def has_more(self) -> bool:
        return bool(self.leads) and self.start + self.count < self.total


def _pagination(payload: Any) -> Dict[str, Any]:
    for path in PAGINATION_PATHS:
        node = payload
        for part in path:
            node = node.get(part) if isinstance(node, dict) else None
        if isinstance(node, dict):
            return node
    return {}


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_search_response(payload: Any) -> SearchPage:
    for envelope in ENVELOPE_VARIANTS:
        leads = envelope.extract(payload)
        if leads is None:
            continue
        records = [item for item in leads if isinstance(item, dict)]
        pagination = _pagination(payload)
        count = _as_int(pagination.get("count"), len(records))
        return SearchPage(
            leads=records,
            total=_as_int(pagination.get("total"), len(records)),
            count=count,
            start=_as_int(pagination.get("start"), 0),
            envelope=envelope.name,
        )
    logging.warning("Search response matched no known envelope; treating as empty")
    return SearchPage(leads=[], total=0, count=0, start=0, envelope="empty")


class SearchClient:
    """POST a SearchRequest to the people-search API."""

    provider = SEARCH_PROVIDER

    def __init__(
        self,
        url: str,
        api_key: str = "",
        *,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        governor: Any = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.policy = policy
        self.governor = governor

    def _post(self, payload: Dict[str, Any]) -> Any:
        return _http_request(
            "POST",
            self.url,
            headers=rapidapi_headers(self.api_key, self.url),
            json_body=payload,
            timeout=self.timeout,
            policy=self.policy,
            provider=self.provider,
        )

    def search(self, request: SearchRequest) -> SearchPage:
        payload = request.to_payload()
        if self.governor is not None:
            raw = self.governor.call(self.provider, self._post, payload)
        else:
            raw = self._post(payload)
        page = parse_search_response(raw)
        logging.info(
            "Search page %d returned %d leads (total=%d, envelope=%s)",
            request.page,
            len(page.leads),
            page.total,
            page.envelope,
        )
        return page

    def search_all(self, request: SearchRequest, max_pages: int = 1) -> List[Dict[str, Any]]:
        leads: List[Dict[str, Any]] = []
        for page_number in range(request.page, request.page + max(1, max_pages)):
            page = self.search(request.for_page(page_number))
            leads.extend(page.leads)
            if not page.has_more:
                break
        return leads
