"""
OAuth token endpoint exchanges: authorization code and refresh token grants.

Neither exchange is retried. A rejected refresh most likely means revoked
consent rather than transient load, so the failure goes straight back to the
caller, who restarts the login.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Type

import httpx

from epic_smart.auth.state import AuthorizationState
from epic_smart.core.audit_service import AuditEventType, AuditService
from epic_smart.core.config import ClientConfig
from epic_smart.core.exceptions import EpicSmartError, TokenExchangeError, TokenRefreshError
from epic_smart.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TokenSet:
    """OAuth token response from the identity provider"""

    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    expires_in: int = 3600
    scope: str = ""
    refresh_token: Optional[str] = field(default=None, repr=False)
    id_token: Optional[str] = field(default=None, repr=False)
    patient: Optional[str] = None  # Patient context from launch
    fhir_user: Optional[str] = None  # User context for clinician logins
    encounter: Optional[str] = None  # Encounter context from launch

    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenSet":
        return cls(
            access_token=data.get("access_token", ""),
            token_type=data.get("token_type", "Bearer"),
            expires_in=int(data.get("expires_in", 3600)),
            scope=data.get("scope", ""),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            patient=data.get("patient"),
            fhir_user=data.get("fhirUser"),
            encounter=data.get("encounter"),
        )

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)

    @property
    def is_expired(self) -> bool:
        # Consider expired 60 seconds before actual expiry
        return datetime.now(timezone.utc) >= (self.expires_at - timedelta(seconds=60))

    @property
    def granted_scopes(self) -> List[str]:
        return self.scope.split() if self.scope else []

    def context(self) -> Dict[str, Optional[str]]:
        """Launch context ids, safe to log"""
        return {
            "patient": self.patient,
            "fhir_user": self.fhir_user,
            "encounter": self.encounter,
        }


class TokenExchanger(ABC):
    """Code and refresh grants against a token endpoint"""

    @abstractmethod
    async def exchange_code(self, code: str, auth_state: AuthorizationState) -> TokenSet:
        ...

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenSet:
        ...


class TokenExchangeEngine(TokenExchanger):
    """
    Live token endpoint client.

    The caller is trusted to have matched ``auth_state.state`` against the
    callback and checked its age (see AuthStateStore.consume); this class only
    performs the HTTP exchange.
    """

    def __init__(
        self,
        config: ClientConfig,
        audit_service: Optional[AuditService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.audit_service = audit_service or AuditService()
        self._http_client = http_client

    async def exchange_code(self, code: str, auth_state: AuthorizationState) -> TokenSet:
        data = {
            "grant_type": "authorization_code",
            "client_id": self.config.client_id,
            "code": code,
            "redirect_uri": auth_state.redirect_uri,
            "code_verifier": auth_state.code_verifier,
        }

        try:
            response = await self._post(data)
        except httpx.HTTPError as e:
            await self._audit(AuditEventType.TOKEN_EXCHANGE_ERROR, "failure", error=type(e).__name__)
            raise TokenExchangeError(f"Token exchange request failed: {type(e).__name__}") from e

        if not response.is_success:
            await self._audit(
                AuditEventType.TOKEN_EXCHANGE_ERROR,
                "failure",
                status_code=response.status_code,
            )
            logger.error("token_exchange_failed", status_code=response.status_code)
            raise TokenExchangeError(
                f"Token exchange failed: {response.status_code} {response.text}",
                status_code=response.status_code,
                diagnostics=response.text,
            )

        token = await self._parse_token(response, AuditEventType.TOKEN_EXCHANGE_ERROR, TokenExchangeError)
        await self._audit(
            AuditEventType.TOKEN_EXCHANGE_SUCCESS,
            "success",
            status_code=response.status_code,
            scope=token.scope,
            **token.context(),
        )
        return token

    async def refresh(self, refresh_token: str) -> TokenSet:
        data = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "refresh_token": refresh_token,
        }

        try:
            response = await self._post(data)
        except httpx.HTTPError as e:
            await self._audit(AuditEventType.TOKEN_REFRESH_ERROR, "failure", error=type(e).__name__)
            raise TokenRefreshError(f"Token refresh request failed: {type(e).__name__}") from e

        if not response.is_success:
            await self._audit(
                AuditEventType.TOKEN_REFRESH_ERROR,
                "failure",
                status_code=response.status_code,
            )
            logger.error("token_refresh_failed", status_code=response.status_code)
            raise TokenRefreshError(
                f"Token refresh failed: {response.status_code}",
                status_code=response.status_code,
                diagnostics=response.text,
            )

        token = await self._parse_token(response, AuditEventType.TOKEN_REFRESH_ERROR, TokenRefreshError)

        # Preserve refresh token if not returned
        if not token.refresh_token:
            token.refresh_token = refresh_token

        await self._audit(
            AuditEventType.TOKEN_REFRESH_SUCCESS,
            "success",
            status_code=response.status_code,
            scope=token.scope,
            **token.context(),
        )
        return token

    async def _parse_token(
        self,
        response: httpx.Response,
        error_event: AuditEventType,
        error_cls: Type[EpicSmartError],
    ) -> TokenSet:
        """Decode a 2xx token response; an undecodable body or one without an access token is a failed grant."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict) or not body.get("access_token"):
            await self._audit(error_event, "failure", status_code=response.status_code, error="invalid_token_response")
            logger.error("token_response_invalid", status_code=response.status_code)
            raise error_cls(
                f"Token endpoint returned an invalid response: {response.status_code}",
                status_code=response.status_code,
                diagnostics=response.text,
            )
        return TokenSet.from_dict(body)

    async def _post(self, data: Dict[str, str]) -> httpx.Response:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        if self._http_client is not None:
            return await self._http_client.post(
                self.config.token_url, data=data, headers=headers, timeout=self.config.timeout_seconds
            )
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            return await client.post(self.config.token_url, data=data, headers=headers)

    async def _audit(
        self,
        event_type: AuditEventType,
        outcome: str,
        status_code: Optional[int] = None,
        **metadata: Any,
    ) -> None:
        await self.audit_service.record(
            event_type,
            outcome=outcome,
            identity=self.config.identity.value,
            endpoint=self.config.token_url,
            method="POST",
            status_code=status_code,
            metadata=metadata,
        )


class MockTokenExchange(TokenExchanger):
    """Token grants for mock mode; no network"""

    MOCK_SCOPE = "patient/*.read user/*.read launch openid profile"

    def __init__(
        self,
        config: ClientConfig,
        audit_service: Optional[AuditService] = None,
        patient_id: str = "mock-patient-123",
    ):
        self.config = config
        self.audit_service = audit_service or AuditService()
        self.patient_id = patient_id

    def _issue(self, refresh_token: Optional[str] = None) -> TokenSet:
        stamp = int(time.time() * 1000)
        is_clinician = self.config.identity.value == "clinician"
        return TokenSet(
            access_token=f"mock_access_token_{stamp}",
            token_type="Bearer",
            expires_in=3600,
            scope=self.MOCK_SCOPE,
            refresh_token=refresh_token or f"mock_refresh_token_{stamp}",
            patient=None if is_clinician else self.patient_id,
            fhir_user="Practitioner/mock-practitioner-1" if is_clinician else None,
        )

    async def exchange_code(self, code: str, auth_state: AuthorizationState) -> TokenSet:
        token = self._issue()
        await self.audit_service.record(
            AuditEventType.TOKEN_EXCHANGE_SUCCESS,
            identity=self.config.identity.value,
            description="mock token exchange",
            metadata={"scope": token.scope, **token.context()},
        )
        return token

    async def refresh(self, refresh_token: str) -> TokenSet:
        token = self._issue(refresh_token=refresh_token)
        await self.audit_service.record(
            AuditEventType.TOKEN_REFRESH_SUCCESS,
            identity=self.config.identity.value,
            description="mock token refresh",
            metadata={"scope": token.scope, **token.context()},
        )
        return token
