"""
DataForSEO API Client

Async HTTP client with:
- Connection pooling
- Automatic retry with exponential backoff
- ProviderError / ProviderTimeout for upstream failures
- Page HTML, ranked keywords and keyword ideas endpoints
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from keyword_intel.exceptions import ProviderError, ProviderTimeout
from .locations import resolve_market

logger = logging.getLogger(__name__)

# DataForSEO status codes that mean the call or task succeeded
OK_STATUS = 20000
TASK_OK_STATUSES = (20000, 20100)

# Labs endpoints
RANKED_KEYWORDS_ENDPOINT = "dataforseo_labs/google/ranked_keywords/live"
KEYWORD_IDEAS_ENDPOINT = "dataforseo_labs/google/keyword_ideas/live"
INSTANT_PAGES_ENDPOINT = "on_page/instant_pages"

MAX_RANKED_LIMIT = 900
MAX_SEED_KEYWORDS = 200

# Labs pricing (USD)
RANKED_COST_PER_1000 = 0.11
SUGGESTIONS_COST_PER_REQUEST = 0.0115


def extract_result_batches(response: Dict) -> List[Dict[str, Any]]:
    """
    Safely extract the result batches of the first task.

    Handles cases where tasks or result are None, empty, or malformed.
    Each returned batch is guaranteed to carry an ``items`` list.
    """
    tasks = response.get("tasks")
    if not tasks or not isinstance(tasks, list) or not isinstance(tasks[0], dict):
        return []

    result = tasks[0].get("result")
    if not result or not isinstance(result, list):
        return []

    batches = []
    for batch in result:
        if not isinstance(batch, dict):
            continue
        items = batch.get("items")
        batches.append({**batch, "items": items if isinstance(items, list) else []})
    return batches


def extract_page_content(item: Dict[str, Any]) -> str:
    """Pick HTML or text content from an instant_pages item."""
    page_content = item.get("page_content")
    if isinstance(page_content, str) and page_content:
        return page_content
    if isinstance(page_content, dict):
        main_topic = page_content.get("main_topic")
        first_topic = main_topic[0] if isinstance(main_topic, list) and main_topic else None
        text = (
            (first_topic.get("text") if isinstance(first_topic, dict) else None)
            or page_content.get("text")
            or page_content.get("content")
        )
        if text:
            return str(text)

    meta = item.get("meta") if isinstance(item.get("meta"), dict) else {}
    content = item.get("html") or meta.get("content") or item.get("text") or item.get("content")
    return str(content) if content else ""


def calculate_labs_cost(ranked_keywords_count: int, suggestion_requests: int) -> float:
    """
    Estimate the Labs cost of an analysis.

    ranked_keywords is billed per 1000 returned items, keyword ideas per request.
    """
    ranked_cost = (ranked_keywords_count / 1000) * RANKED_COST_PER_1000
    suggestions_cost = suggestion_requests * SUGGESTIONS_COST_PER_REQUEST
    return round(ranked_cost + suggestions_cost, 6)


@dataclass
class RetryConfig:
    """Backoff schedule for transient provider failures."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    def is_retryable(self, error: ProviderError) -> bool:
        code = error.status_code
        if code is None or code in self.retryable_status_codes:
            return True
        # DataForSEO 5xxxx codes are internal errors on their side
        return 50000 <= code < 60000

    def delays(self):
        """Sleep before each retry, capped at max_delay."""
        delay = self.initial_delay
        for _ in range(self.max_retries):
            yield delay
            delay = min(delay * self.exponential_base, self.max_delay)


class DataForSEOClient:
    """
    The three DataForSEO calls a keyword analysis makes, over one pooled
    httpx.AsyncClient with Basic auth.

    Usage:
        async with DataForSEOClient(login, password) as client:
            batches = await client.fetch_ranked_keywords("example.com", "FR", limit=900)
    """

    BASE_URL = "https://api.dataforseo.com/v3"

    def __init__(
        self,
        login: str,
        password: str,
        retry_config: Optional[RetryConfig] = None,
        max_connections: int = 20,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            login: API login (account email)
            password: API password, not the account password
            timeout: Seconds before a call raises ProviderTimeout
            transport: Replaces the network, e.g. httpx.MockTransport
        """
        self.retry_config = retry_config or RetryConfig()
        token = base64.b64encode(f"{login}:{password}".encode()).decode()

        self._client = httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers={"Authorization": f"Basic {token}", "Content-Type": "application/json"},
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max(1, max_connections // 2),
            ),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._closed = False

    async def post(self, endpoint: str, data: List[Dict[str, Any]], retry: bool = True) -> Dict[str, Any]:
        """
        Send one task list to an endpoint and return the decoded envelope.

        Raises:
            ProviderError: HTTP, API-level or task-level failure
            ProviderTimeout: No response within the timeout
        """
        if self._closed:
            raise ProviderError("Client is closed")

        path = f"/{endpoint}"
        if not retry:
            return await self._attempt(path, data)

        delays = self.retry_config.delays()
        attempt = 1
        while True:
            try:
                return await self._attempt(path, data)
            except ProviderError as e:
                if not self.retry_config.is_retryable(e):
                    raise
                delay = next(delays, None)
                if delay is None:
                    raise
                logger.warning(f"{path} failed (attempt {attempt}): {e}. Retrying in {delay}s")
                await asyncio.sleep(delay)
                attempt += 1

    async def _attempt(self, path: str, data: List[Dict]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=data)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Request timed out: {path}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}") from e
        return _check_envelope(path, response)

    async def close(self):
        if not self._closed:
            await self._client.aclose()
            self._closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ========================================================================
    # KEYWORD PIPELINE ENDPOINTS
    # ========================================================================

    async def fetch_page_html(self, url: str) -> str:
        """
        Fetch the rendered page content of a URL.

        Returns:
            HTML or text content, empty string when the page has none
        """
        response = await self.post(INSTANT_PAGES_ENDPOINT, [{
            "url": url,
            "enable_javascript": True,
            "enable_browser_rendering": True,
            "load_resources": True,
        }])

        for batch in extract_result_batches(response):
            for item in batch["items"]:
                if isinstance(item, dict):
                    content = extract_page_content(item)
                    if content:
                        return content
        return ""

    async def fetch_ranked_keywords(
        self,
        domain: str,
        country: str,
        limit: int = MAX_RANKED_LIMIT,
        language: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Get keywords the domain currently ranks for, highest volume first.

        Args:
            domain: Target domain (no scheme)
            country: ISO country code
            limit: Result cap (at most 900)
            language: Preferred language for bilingual markets

        Returns:
            Result batches, each with an ``items`` list
        """
        location_code, language_code = resolve_market(country, language)
        response = await self.post(RANKED_KEYWORDS_ENDPOINT, [{
            "target": domain,
            "location_code": location_code,
            "language_code": language_code,
            "limit": min(limit, MAX_RANKED_LIMIT),
            "filters": [["keyword_data.keyword_info.search_volume", ">", 10]],
            "order_by": ["keyword_data.keyword_info.search_volume,desc"],
        }])
        batches = extract_result_batches(response)
        logger.info(
            f"Ranked keywords for {domain} ({location_code}/{language_code}): "
            f"{sum(len(b['items']) for b in batches)} items"
        )
        return batches

    async def fetch_keyword_suggestions(
        self,
        seed_keywords: List[str],
        country: str,
        limit: int = 100,
        language: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Get related keyword ideas for a list of seed keywords.

        Args:
            seed_keywords: Up to 200 seeds
            country: ISO country code
            limit: Result cap
            language: Preferred language for bilingual markets

        Returns:
            Result batches, each with an ``items`` list
        """
        if len(seed_keywords) > MAX_SEED_KEYWORDS:
            raise ValueError(f"At most {MAX_SEED_KEYWORDS} seed keywords per request, got {len(seed_keywords)}")

        location_code, language_code = resolve_market(country, language)
        response = await self.post(KEYWORD_IDEAS_ENDPOINT, [{
            "keywords": list(seed_keywords),
            "location_code": location_code,
            "language_code": language_code,
            "limit": limit,
            "order_by": ["keyword_info.search_volume,desc"],
        }])
        batches = extract_result_batches(response)
        logger.info(
            f"Keyword ideas for {len(seed_keywords)} seeds: "
            f"{sum(len(b['items']) for b in batches)} items"
        )
        return batches


def _json_or_none(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _check_envelope(path: str, response: httpx.Response) -> Dict[str, Any]:
    """Decode a response, raising for HTTP, API-level and task-level errors."""
    body = _json_or_none(response)
    if response.status_code != 200:
        raise ProviderError(
            f"API request failed: {response.status_code}",
            status_code=response.status_code,
            response=body,
        )
    if not isinstance(body, dict):
        raise ProviderError("API returned a non-JSON body", status_code=response.status_code)

    if body.get("status_code") != OK_STATUS:
        raise ProviderError(
            f"API error: {body.get('status_message', 'Unknown error')}",
            status_code=body.get("status_code"),
            response=body,
        )

    # Every call sends exactly one task
    tasks = body.get("tasks")
    for task in tasks if isinstance(tasks, list) else []:
        if not isinstance(task, dict):
            # Yields no result batches, see extract_result_batches
            logger.warning(f"Ignoring malformed task in {path}: {task!r}")
            continue
        if task.get("status_code") not in TASK_OK_STATUSES:
            raise ProviderError(
                f"Task error in {path}: {task.get('status_message', 'Task error')}",
                status_code=task.get("status_code"),
                response=body,
            )
    return body
