"""Tests for core/graph_rest.py - raw Graph REST client."""

from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx
from tenacity import wait_none

from m365admin.core.config import GraphCredentials
from m365admin.core.graph_rest import (
    MAX_RETRIES,
    MAX_WAIT_SECONDS,
    GraphRestClient,
    GraphRestError,
    _wait_retry_after,
)

TOKEN_URL = "https://login.microsoftonline.com/test-tenant/oauth2/v2.0/token"
USERS_URL = "https://graph.microsoft.com/v1.0/users"


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    """Retry immediately instead of backing off."""
    monkeypatch.setattr(GraphRestClient._request.retry, "wait", wait_none())


@pytest.fixture
def rest_client():
    return GraphRestClient(
        tenant_id="test-tenant",
        client_id="test-client",
        client_secret="test-secret",
    )


def _mock_token(token: str = "token-1") -> respx.Route:
    return respx.post(TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"access_token": token, "expires_in": 3599})
    )


# =============================================================================
# Construction
# =============================================================================


class TestGraphRestClientInit:
    """Tests for GraphRestClient initialization."""

    @patch("m365admin.core.graph_rest.get_graph_credentials")
    def test_falls_back_to_environment(self, mock_get_creds):
        mock_get_creds.return_value = GraphCredentials(
            tenant_id="env-tenant", client_id="env-client", client_secret="env-secret"
        )

        client = GraphRestClient()

        assert client.tenant_id == "env-tenant"
        assert client.client_id == "env-client"
        assert client.client_secret == "env-secret"
        assert client.token_url.endswith("/env-tenant/oauth2/v2.0/token")

    @patch("m365admin.core.graph_rest.get_graph_credentials")
    def test_requires_client_secret(self, mock_get_creds):
        mock_get_creds.return_value = GraphCredentials(
            tenant_id="env-tenant", client_id="env-client", certificate_path="/c.pem"
        )

        with pytest.raises(ValueError, match="client secret"):
            GraphRestClient()

    def test_build_url(self, rest_client):
        assert rest_client.build_url("/users") == USERS_URL
        assert rest_client.build_url("users") == USERS_URL
        assert rest_client.build_url("https://graph.microsoft.com/beta/me") == (
            "https://graph.microsoft.com/beta/me"
        )

    def test_build_url_beta(self):
        client = GraphRestClient("t", "c", "s", api_version="beta")
        assert client.build_url("/groups") == "https://graph.microsoft.com/beta/groups"

    def test_requires_context_manager(self, rest_client):
        with pytest.raises(RuntimeError, match="context manager"):
            rest_client.acquire_token()


# =============================================================================
# Token acquisition
# =============================================================================


class TestAcquireToken:
    """Tests for the client credentials token request."""

    @respx.mock
    def test_posts_client_credentials_grant(self, rest_client):
        route = _mock_token("abc")

        with rest_client:
            token = rest_client.acquire_token()

        assert token == "abc"
        assert rest_client.access_token == "abc"
        body = route.calls.last.request.content.decode()
        assert "grant_type=client_credentials" in body
        assert "client_id=test-client" in body
        assert "scope=https%3A%2F%2Fgraph.microsoft.com%2F.default" in body

    @respx.mock
    def test_error_response_raises(self, rest_client):
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                401,
                json={"error": "invalid_client", "error_description": "AADSTS7000215: bad secret"},
            )
        )

        with rest_client, pytest.raises(GraphRestError) as exc_info:
            rest_client.acquire_token()

        assert exc_info.value.status_code == 401
        assert "AADSTS7000215" in exc_info.value.message

    @respx.mock
    def test_missing_access_token_raises(self, rest_client):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"token_type": "Bearer"}))

        with rest_client, pytest.raises(GraphRestError, match="No access_token"):
            rest_client.acquire_token()


# =============================================================================
# GET
# =============================================================================


class TestGet:
    """Tests for GraphRestClient.get."""

    @respx.mock
    def test_sends_bearer_token(self, rest_client):
        _mock_token("abc")
        route = respx.get(USERS_URL).mock(
            return_value=httpx.Response(200, json={"value": [{"id": "1"}]})
        )

        with rest_client:
            data = rest_client.get("/users", params={"$top": "1"})

        assert data == {"value": [{"id": "1"}]}
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer abc"
        assert request.headers["Content-Type"] == "application/json"
        assert request.url.params["$top"] == "1"

    @respx.mock
    def test_token_acquired_once(self, rest_client):
        token_route = _mock_token()
        respx.get(USERS_URL).mock(return_value=httpx.Response(200, json={"value": []}))

        with rest_client:
            rest_client.get("/users")
            rest_client.get("/users")

        assert token_route.call_count == 1

    @respx.mock
    def test_refreshes_token_once_on_401(self, rest_client):
        token_route = respx.post(TOKEN_URL).mock(
            side_effect=[
                httpx.Response(200, json={"access_token": "old"}),
                httpx.Response(200, json={"access_token": "new"}),
            ]
        )
        route = respx.get(USERS_URL).mock(
            side_effect=[
                httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}}),
                httpx.Response(200, json={"value": []}),
            ]
        )

        with rest_client:
            rest_client.get("/users")

        assert token_route.call_count == 2
        assert route.calls.last.request.headers["Authorization"] == "Bearer new"

    @respx.mock
    def test_error_raises_with_graph_message(self, rest_client):
        _mock_token()
        respx.get(USERS_URL).mock(
            return_value=httpx.Response(
                403,
                json={"error": {"code": "Authorization_RequestDenied", "message": "Insufficient"}},
            )
        )

        with rest_client, pytest.raises(GraphRestError) as exc_info:
            rest_client.get("/users")

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Insufficient"
        assert exc_info.value.url == USERS_URL

    @respx.mock
    def test_retries_when_throttled(self, rest_client):
        _mock_token()
        route = respx.get(USERS_URL).mock(
            side_effect=[
                httpx.Response(429, headers={"Retry-After": "1"}),
                httpx.Response(503),
                httpx.Response(200, json={"value": [{"id": "1"}]}),
            ]
        )

        with rest_client:
            data = rest_client.get("/users")

        assert route.call_count == 3
        assert data["value"] == [{"id": "1"}]

    @respx.mock
    def test_gives_up_after_max_retries(self, rest_client):
        _mock_token()
        route = respx.get(USERS_URL).mock(return_value=httpx.Response(429))

        with rest_client, pytest.raises(GraphRestError) as exc_info:
            rest_client.get("/users")

        assert route.call_count == MAX_RETRIES
        assert exc_info.value.status_code == 429

    @respx.mock
    def test_empty_body(self, rest_client):
        _mock_token()
        respx.get(USERS_URL).mock(return_value=httpx.Response(204))

        with rest_client:
            assert rest_client.get("/users") == {}


class TestGetAll:
    """Tests for GraphRestClient.get_all pagination."""

    NEXT_LINK = f"{USERS_URL}?$skiptoken=page2"

    @respx.mock
    def test_follows_next_link(self, rest_client):
        _mock_token()
        route = respx.get(USERS_URL).mock(
            side_effect=[
                httpx.Response(
                    200, json={"value": [{"id": "1"}], "@odata.nextLink": self.NEXT_LINK}
                ),
                httpx.Response(200, json={"value": [{"id": "2"}]}),
            ]
        )

        with rest_client:
            items = rest_client.get_all("/users", params={"$select": "id"})

        assert [i["id"] for i in items] == ["1", "2"]
        first, second = route.calls
        assert first.request.url.params["$select"] == "id"
        # Params are only sent with the first page
        assert "$select" not in second.request.url.params
        assert second.request.url.params["$skiptoken"] == "page2"

    @respx.mock
    def test_max_pages(self, rest_client):
        _mock_token()
        route = respx.get(USERS_URL).mock(
            return_value=httpx.Response(
                200, json={"value": [{"id": "1"}], "@odata.nextLink": self.NEXT_LINK}
            )
        )

        with rest_client:
            items = rest_client.get_all("/users", max_pages=2)

        assert len(items) == 2
        assert route.call_count == 2


class TestRetryWait:
    """Tests for the throttling wait strategy."""

    def _retry_state(self, response: httpx.Response, attempt: int = 1) -> MagicMock:
        state = MagicMock()
        state.outcome.result.return_value = response
        state.attempt_number = attempt
        return state

    def test_uses_retry_after_seconds(self):
        state = self._retry_state(httpx.Response(429, headers={"Retry-After": "7"}))
        assert _wait_retry_after(state) == 7.0

    def test_retry_after_is_capped(self):
        state = self._retry_state(httpx.Response(429, headers={"Retry-After": "600"}))
        assert _wait_retry_after(state) == MAX_WAIT_SECONDS

    def test_backs_off_without_retry_after(self):
        state = self._retry_state(httpx.Response(503))
        assert 1 <= _wait_retry_after(state) <= 2

    def test_ignores_http_date_retry_after(self):
        state = self._retry_state(
            httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
        )
        assert 1 <= _wait_retry_after(state) <= 2
