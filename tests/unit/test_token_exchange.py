"""
Unit tests for the token endpoint exchanges.

The token endpoint is simulated with httpx.MockTransport.
"""

from urllib.parse import parse_qs

import httpx
import pytest
from epic_smart.auth.state import AuthorizationState
from epic_smart.auth.token_exchange import MockTokenExchange, TokenExchangeEngine, TokenSet
from epic_smart.core.audit_service import AuditEventType
from epic_smart.core.config import ClientIdentity, resolve_client_config
from epic_smart.core.exceptions import TokenExchangeError, TokenRefreshError

TOKEN_RESPONSE = {
    "access_token": "secret-access-token",
    "token_type": "Bearer",
    "expires_in": 3600,
    "scope": "patient/Patient.read openid",
    "refresh_token": "secret-refresh-token",
    "patient": "erXuFYUfucBZaryVksYEcMg3",
    "encounter": "enc-1",
}


@pytest.fixture
def auth_state():
    return AuthorizationState(state="state-1", code_verifier="verifier-xyz", redirect_uri="http://x/cb")


def _form(request: httpx.Request):
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestExchangeCode:
    """Tests for the authorization_code grant."""

    @pytest.mark.asyncio
    async def test_posts_form_encoded_grant(self, live_config, audit_service, http_client_for, auth_state):
        """Should POST the code, verifier and redirect URI as a form."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=TOKEN_RESPONSE)

        engine = TokenExchangeEngine(live_config, audit_service, http_client_for(handler))
        await engine.exchange_code("auth-code", auth_state)

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == live_config.token_url
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert _form(request) == {
            "grant_type": "authorization_code",
            "client_id": "abc",
            "code": "auth-code",
            "redirect_uri": "http://x/cb",
            "code_verifier": "verifier-xyz",
        }

    @pytest.mark.asyncio
    async def test_returns_populated_token_set(self, live_config, audit_service, http_client_for, auth_state):
        """Launch context fields should be carried through."""
        engine = TokenExchangeEngine(
            live_config,
            audit_service,
            http_client_for(lambda r: httpx.Response(200, json={**TOKEN_RESPONSE, "fhirUser": "Practitioner/1"})),
        )
        token = await engine.exchange_code("auth-code", auth_state)

        assert token.access_token == "secret-access-token"
        assert token.refresh_token == "secret-refresh-token"
        assert token.expires_in == 3600
        assert token.patient == "erXuFYUfucBZaryVksYEcMg3"
        assert token.encounter == "enc-1"
        assert token.fhir_user == "Practitioner/1"
        assert token.granted_scopes == ["patient/Patient.read", "openid"]

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_status_and_body(self, live_config, audit_service, http_client_for, auth_state):
        engine = TokenExchangeEngine(
            live_config,
            audit_service,
            http_client_for(lambda r: httpx.Response(400, text="Bad Request")),
        )

        with pytest.raises(TokenExchangeError) as exc_info:
            await engine.exchange_code("auth-code", auth_state)

        assert str(exc_info.value) == "Token exchange failed: 400 Bad Request"
        assert exc_info.value.status_code == 400
        assert exc_info.value.diagnostics == "Bad Request"

    @pytest.mark.asyncio
    async def test_network_error_wrapped(self, live_config, audit_service, http_client_for, auth_state):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        engine = TokenExchangeEngine(live_config, audit_service, http_client_for(handler))

        with pytest.raises(TokenExchangeError):
            await engine.exchange_code("auth-code", auth_state)
        events = audit_service.recent(event_type=AuditEventType.TOKEN_EXCHANGE_ERROR)
        assert events[-1].metadata["error"] == "ConnectError"

    @pytest.mark.asyncio
    async def test_audit_events_never_contain_secrets(self, live_config, audit_service, http_client_for, auth_state):
        """Audit trail carries scope and context ids only."""
        engine = TokenExchangeEngine(
            live_config,
            audit_service,
            http_client_for(lambda r: httpx.Response(200, json=TOKEN_RESPONSE)),
        )
        await engine.exchange_code("auth-code", auth_state)

        event = audit_service.recent(event_type=AuditEventType.TOKEN_EXCHANGE_SUCCESS)[-1]
        serialized = str(event.to_dict())
        for secret in ("secret-access-token", "secret-refresh-token", "auth-code", "verifier-xyz"):
            assert secret not in serialized
        assert event.metadata["scope"] == TOKEN_RESPONSE["scope"]
        assert event.metadata["patient"] == TOKEN_RESPONSE["patient"]

    @pytest.mark.asyncio
    async def test_failure_audited(self, live_config, audit_service, http_client_for, auth_state):
        engine = TokenExchangeEngine(
            live_config,
            audit_service,
            http_client_for(lambda r: httpx.Response(401, text="invalid_grant")),
        )
        with pytest.raises(TokenExchangeError):
            await engine.exchange_code("auth-code", auth_state)

        event = audit_service.recent()[-1]
        assert event.event_type == AuditEventType.TOKEN_EXCHANGE_ERROR
        assert event.outcome == "failure"
        assert event.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>gateway</html>"),
            httpx.Response(200, json={"token_type": "Bearer", "expires_in": 3600}),
        ],
    )
    async def test_unusable_success_body_raises_and_audits(
        self, live_config, audit_service, http_client_for, auth_state, response
    ):
        """A 2xx body without a decodable access token is a failed exchange."""
        engine = TokenExchangeEngine(live_config, audit_service, http_client_for(lambda r: response))

        with pytest.raises(TokenExchangeError) as exc_info:
            await engine.exchange_code("auth-code", auth_state)

        assert exc_info.value.status_code == 200
        event = audit_service.recent()[-1]
        assert event.event_type == AuditEventType.TOKEN_EXCHANGE_ERROR
        assert event.outcome == "failure"


class TestRefresh:
    """Tests for the refresh_token grant."""

    @pytest.mark.asyncio
    async def test_posts_refresh_grant(self, live_config, audit_service, http_client_for):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=TOKEN_RESPONSE)

        engine = TokenExchangeEngine(live_config, audit_service, http_client_for(handler))
        await engine.refresh("old-refresh")

        assert _form(seen[0]) == {
            "grant_type": "refresh_token",
            "client_id": "abc",
            "refresh_token": "old-refresh",
        }

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_not_rotated(self, live_config, audit_service, http_client_for):
        body = {k: v for k, v in TOKEN_RESPONSE.items() if k != "refresh_token"}
        engine = TokenExchangeEngine(live_config, audit_service, http_client_for(lambda r: httpx.Response(200, json=body)))

        token = await engine.refresh("old-refresh")
        assert token.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_failure_is_not_retried(self, live_config, audit_service, http_client_for):
        """A rejected refresh surfaces immediately after a single call."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "invalid_grant"})

        engine = TokenExchangeEngine(live_config, audit_service, http_client_for(handler))

        with pytest.raises(TokenRefreshError) as exc_info:
            await engine.refresh("revoked")

        assert len(calls) == 1
        assert exc_info.value.status_code == 400
        assert audit_service.recent()[-1].event_type == AuditEventType.TOKEN_REFRESH_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>gateway</html>"),
            httpx.Response(200, json={"access_token": ""}),
        ],
    )
    async def test_unusable_success_body_raises_and_audits(self, live_config, audit_service, http_client_for, response):
        engine = TokenExchangeEngine(live_config, audit_service, http_client_for(lambda r: response))

        with pytest.raises(TokenRefreshError) as exc_info:
            await engine.refresh("old-refresh")

        assert exc_info.value.status_code == 200
        event = audit_service.recent()[-1]
        assert event.event_type == AuditEventType.TOKEN_REFRESH_ERROR
        assert event.outcome == "failure"


class TestTokenSet:
    def test_repr_hides_tokens(self):
        token = TokenSet.from_dict(TOKEN_RESPONSE)
        assert "secret-access-token" not in repr(token)
        assert "secret-refresh-token" not in repr(token)

    def test_expiry_skew(self):
        assert TokenSet(access_token="a", expires_in=30).is_expired
        assert not TokenSet(access_token="a", expires_in=3600).is_expired


class TestMockTokenExchange:
    @pytest.mark.asyncio
    async def test_patient_context(self, mock_settings, audit_service, auth_state):
        exchange = MockTokenExchange(resolve_client_config(ClientIdentity.PATIENT, mock_settings), audit_service)
        token = await exchange.exchange_code("any", auth_state)

        assert token.access_token.startswith("mock_access_token_")
        assert token.patient == "mock-patient-123"
        assert token.fhir_user is None

    @pytest.mark.asyncio
    async def test_clinician_context(self, mock_settings, audit_service, auth_state):
        exchange = MockTokenExchange(resolve_client_config(ClientIdentity.CLINICIAN, mock_settings), audit_service)
        token = await exchange.exchange_code("any", auth_state)

        assert token.patient is None
        assert token.fhir_user == "Practitioner/mock-practitioner-1"

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token(self, mock_settings, audit_service):
        exchange = MockTokenExchange(resolve_client_config(ClientIdentity.PATIENT, mock_settings), audit_service)
        token = await exchange.refresh("mock_refresh_token_1")
        assert token.refresh_token == "mock_refresh_token_1"
