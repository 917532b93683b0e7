"""
SMART session lifecycle over a SessionStore.

Tokens are kept encrypted in the store; a decrypted token only lives for the
duration of the call that needs it. Keys are prefixed per identity
(``epic_`` or ``epic_clinician_``) so both contexts can share one store.
"""

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from epic_smart.auth.state import AuthStateStore, SessionStore
from epic_smart.auth.token_exchange import TokenSet
from epic_smart.core.audit_service import AuditEventType
from epic_smart.core.config import ClientIdentity, Settings, settings
from epic_smart.core.exceptions import (
    AuthorizationDeniedError,
    DecryptionError,
    NotAuthenticatedError,
    TokenRefreshError,
)
from epic_smart.core.logging import get_logger

if TYPE_CHECKING:
    from epic_smart.fhir.client import EpicFHIRClient

logger = get_logger(__name__)

# Access tokens are dropped from the store this long before the IdP expires them
ACCESS_TOKEN_EXPIRY_SKEW_SECONDS = 60


class SmartSessionManager:
    """Login, callback, token retrieval and logout for one identity context"""

    def __init__(
        self,
        client: "EpicFHIRClient",
        store: SessionStore,
        app_settings: Optional[Settings] = None,
    ):
        s = app_settings or settings
        self.client = client
        self.store = store
        self.prefix = "epic_clinician_" if client.identity == ClientIdentity.CLINICIAN else "epic_"
        self.refresh_ttl_seconds = s.REFRESH_TOKEN_TTL_SECONDS
        self.auth_states = AuthStateStore(
            store,
            key=f"{self.prefix}auth_state",
            ttl_seconds=s.AUTH_STATE_TTL_SECONDS,
        )

    @property
    def access_token_key(self) -> str:
        return f"{self.prefix}access_token"

    @property
    def refresh_token_key(self) -> str:
        return f"{self.prefix}refresh_token"

    @property
    def metadata_key(self) -> str:
        return f"{self.prefix}token_metadata"

    # =========================================================================
    # Login
    # =========================================================================

    async def begin_login(self, scopes: Optional[Sequence[str]] = None) -> str:
        """Persist a fresh authorization state and return the URL to redirect to."""
        login = self.client.generate_auth_url(scopes)
        await self.auth_states.save(login.state)
        return login.url

    async def complete_login(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> TokenSet:
        """
        Handle the authorization callback.

        Raises:
            AuthorizationDeniedError: IdP returned an error, or code/state is missing
            StateValidationError: stored state missing, malformed, mismatched or expired
            TokenExchangeError: token endpoint rejected the code
        """
        if error:
            await self.auth_states.discard()
            logger.warning("authorization_denied", error=error)
            raise AuthorizationDeniedError(error, error_description)
        if not code or not state:
            await self.auth_states.discard()
            raise AuthorizationDeniedError("missing_parameters", "Authorization code or state missing from callback")

        auth_state = await self.auth_states.consume(state)
        token = await self.client.exchange_code(code, auth_state)
        await self._store_tokens(token)

        await self.client.audit_service.record(
            AuditEventType.SESSION_START,
            identity=self.client.identity.value,
            metadata={"scope": token.scope, **token.context()},
        )
        return token

    # =========================================================================
    # Tokens
    # =========================================================================

    async def _store_tokens(self, token: TokenSet) -> None:
        access_ttl = max(token.expires_in - ACCESS_TOKEN_EXPIRY_SKEW_SECONDS, 1)
        await self.store.set(
            self.access_token_key,
            self.client.encrypt(token.access_token),
            ttl_seconds=access_ttl,
        )

        if token.refresh_token:
            await self.store.set(
                self.refresh_token_key,
                self.client.encrypt(token.refresh_token),
                ttl_seconds=self.refresh_ttl_seconds,
            )

        metadata = {
            "scope": token.scope,
            "expires_at": token.expires_at.isoformat(),
            "patient": token.patient,
            "fhir_user": token.fhir_user,
            "encounter": token.encounter,
        }
        await self.store.set(self.metadata_key, json.dumps(metadata), ttl_seconds=self.refresh_ttl_seconds)

    async def get_access_token(self) -> str:
        """
        Decrypted access token for the current session, refreshing if needed.

        Raises:
            NotAuthenticatedError: nothing usable in the store
            TokenRefreshError: refresh token rejected; the session is cleared
        """
        encrypted = await self.store.get(self.access_token_key)
        if encrypted:
            try:
                return self.client.decrypt(encrypted)
            except DecryptionError:
                logger.warning("stored_access_token_unreadable", identity=self.client.identity.value)
                await self.store.delete(self.access_token_key)

        encrypted_refresh = await self.store.get(self.refresh_token_key)
        if not encrypted_refresh:
            raise NotAuthenticatedError("Not authenticated", status_code=401)

        try:
            refresh_token = self.client.decrypt(encrypted_refresh)
        except DecryptionError as e:
            await self._clear()
            raise NotAuthenticatedError("Stored session could not be read", status_code=401) from e

        previous = await self.session_info() or {}
        try:
            token = await self.client.refresh_token(refresh_token)
        except TokenRefreshError:
            await self._clear()
            raise

        # Launch context is not always repeated on refresh
        token.patient = token.patient or previous.get("patient")
        token.fhir_user = token.fhir_user or previous.get("fhir_user")
        token.encounter = token.encounter or previous.get("encounter")

        await self._store_tokens(token)
        logger.info("session_refreshed", identity=self.client.identity.value)
        return token.access_token

    async def session_info(self) -> Optional[Dict[str, Any]]:
        """Non-secret session metadata, or None when there is no session"""
        raw = await self.store.get(self.metadata_key)
        if not raw:
            return None
        try:
            info = json.loads(raw)
        except ValueError:
            return None

        expires_at = info.get("expires_at")
        info["expired"] = bool(expires_at) and datetime.fromisoformat(expires_at) <= datetime.now(timezone.utc)
        info["identity"] = self.client.identity.value
        return info

    async def logout(self) -> None:
        await self._clear()
        await self.client.audit_service.record(
            AuditEventType.SESSION_END,
            identity=self.client.identity.value,
        )

    async def _clear(self) -> None:
        for key in (self.access_token_key, self.refresh_token_key, self.metadata_key):
            await self.store.delete(key)
