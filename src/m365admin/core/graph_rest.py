"""Raw Microsoft Graph REST client.

Talks to the token endpoint and Graph directly over HTTP instead of going
through the SDK. Useful for ad-hoc queries against any Graph URL, e.g.:

    /applications?$select=id,displayName,passwordCredentials,keyCredentials
"""

import logging
from typing import Any, Self

import httpx
from tenacity import (
    retry,
    retry_if_result,
    stop_after_attempt,
    wait_exponential_jitter,
)

from m365admin.core.config import get_graph_credentials

logger = logging.getLogger(__name__)

LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"

# Rate limiting configuration
MAX_RETRIES = 5
MIN_WAIT_SECONDS = 1
MAX_WAIT_SECONDS = 30
RETRYABLE_STATUS_CODES = frozenset({429, 503, 504})


class GraphRestError(Exception):
    """Raised when the token endpoint or Graph returns an error."""

    def __init__(self, status_code: int, message: str, url: str) -> None:
        self.status_code = status_code
        self.message = message
        self.url = url
        super().__init__(f"Graph API error {status_code} for {url}: {message}")


def _is_throttled(response: httpx.Response) -> bool:
    """Check if response indicates throttling or a transient outage."""
    return response.status_code in RETRYABLE_STATUS_CODES


_backoff = wait_exponential_jitter(initial=MIN_WAIT_SECONDS, max=MAX_WAIT_SECONDS)


def _wait_retry_after(retry_state) -> float:
    """Wait as long as Graph's Retry-After header asks, else back off exponentially."""
    response = retry_state.outcome.result()
    retry_after = response.headers.get("Retry-After", "")
    if retry_after.isdigit():
        return min(float(retry_after), MAX_WAIT_SECONDS)
    return _backoff(retry_state)


def _log_retry(retry_state) -> None:
    """Log retry attempts."""
    logger.warning(f"Throttled by Graph, retry attempt {retry_state.attempt_number + 1}")


def _error_message(response: httpx.Response) -> str:
    """Extract a readable error message from a Graph or AAD error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase

    error = body.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or str(error)
    return body.get("error_description") or error or response.reason_phrase


class GraphRestClient:
    """Client-credentials Graph client built on httpx."""

    def __init__(
        self,
        tenant_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        api_version: str = "v1.0",
    ) -> None:
        """Initialize the client.

        Args:
            tenant_id: Tenant ID (defaults to MS_GRAPH_TENANT_ID)
            client_id: App client ID (defaults to MS_GRAPH_CLIENT_ID)
            client_secret: Client secret (defaults to MS_GRAPH_CLIENT_SECRET)
            api_version: Graph API version for relative endpoints ("v1.0" or "beta")
        """
        if not (tenant_id and client_id and client_secret):
            creds = get_graph_credentials()
            tenant_id = tenant_id or creds.tenant_id
            client_id = client_id or creds.client_id
            client_secret = client_secret or creds.client_secret
        if not client_secret:
            raise ValueError("GraphRestClient requires a client secret (MS_GRAPH_CLIENT_SECRET)")

        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_version = api_version
        self.client: httpx.Client | None = None
        self.access_token: str | None = None

    def __enter__(self) -> Self:
        """Enter context manager - create HTTP client."""
        self.client = httpx.Client(timeout=60.0)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - close HTTP client."""
        if self.client:
            self.client.close()
            self.client = None

    @property
    def token_url(self) -> str:
        """OAuth2 v2.0 token endpoint for the tenant."""
        return f"{LOGIN_BASE_URL}/{self.tenant_id}/oauth2/v2.0/token"

    def build_url(self, endpoint: str) -> str:
        """Resolve a relative Graph endpoint against the configured API version."""
        if endpoint.startswith(("https://", "http://")):
            return endpoint
        return f"{GRAPH_BASE_URL}/{self.api_version}/{endpoint.lstrip('/')}"

    def acquire_token(self) -> str:
        """Request an app-only access token with the client credentials grant.

        Returns:
            The bearer access token

        Raises:
            GraphRestError: If the token endpoint rejects the request
        """
        if not self.client:
            raise RuntimeError("Client must be used as context manager")

        logger.debug(f"Requesting access token for client {self.client_id}")
        response = self.client.post(
            self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": GRAPH_DEFAULT_SCOPE,
                "grant_type": "client_credentials",
            },
        )

        if response.status_code != 200:
            raise GraphRestError(response.status_code, _error_message(response), self.token_url)

        token = response.json().get("access_token")
        if not token:
            raise GraphRestError(
                response.status_code, "No access_token in response", self.token_url
            )

        self.access_token = token
        return token

    @retry(
        retry=retry_if_result(_is_throttled),
        stop=stop_after_attempt(MAX_RETRIES),
        wait=_wait_retry_after,
        before_sleep=_log_retry,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Make an authenticated request, retrying while Graph throttles us.

        A 401 triggers one token refresh before the response is returned.
        """
        if not self.client:
            raise RuntimeError("Client must be used as context manager")

        if not self.access_token:
            self.acquire_token()

        response = self.client.request(method, url, headers=self._headers(), **kwargs)

        if response.status_code == 401:
            logger.info("Access token rejected, requesting a new one")
            self.acquire_token()
            response = self.client.request(method, url, headers=self._headers(), **kwargs)

        if _is_throttled(response):
            logger.warning(f"Throttled ({response.status_code}) on {method} {url}")

        return response

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict:
        """GET a Graph endpoint and return the decoded JSON body.

        Args:
            endpoint: Relative endpoint ("/users") or absolute Graph URL
            params: Optional query parameters

        Raises:
            GraphRestError: For any non-2xx response (after retries)
        """
        url = self.build_url(endpoint)
        response = self._request("GET", url, params=params)

        if response.status_code >= 400:
            raise GraphRestError(response.status_code, _error_message(response), url)

        if not response.content:
            return {}
        return response.json()

    def get_all(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> list[dict]:
        """GET a collection, following @odata.nextLink until exhausted.

        Args:
            endpoint: Relative endpoint or absolute Graph URL
            params: Query parameters for the first page only
            max_pages: Stop after this many pages (None for no limit)

        Returns:
            Concatenated "value" items from every page
        """
        items: list[dict] = []
        url: str | None = endpoint
        pages = 0

        while url:
            data = self.get(url, params=params)
            items.extend(data.get("value", []))
            pages += 1

            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None

            if max_pages is not None and pages >= max_pages:
                if url:
                    logger.warning(f"Stopped after {pages} pages, more results available")
                break

        logger.debug(f"Fetched {len(items)} items in {pages} pages from {endpoint}")
        return items
