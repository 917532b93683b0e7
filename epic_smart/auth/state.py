"""
Authorization state and session storage.

The surrounding application owns persistence (cookies, headers, a server-side
session table). The core only needs a ``SessionStore`` capability keyed by
opaque ids; ``AuthStateStore`` layers single-use, expiring authorization state
on top of it.
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from epic_smart.core.exceptions import StateValidationError
from epic_smart.core.logging import get_logger

logger = get_logger(__name__)

AUTH_STATE_TTL = timedelta(minutes=10)


@dataclass
class AuthorizationState:
    """State for one OAuth authorization attempt"""

    state: str
    code_verifier: str = field(repr=False)
    redirect_uri: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, now: Optional[datetime] = None, ttl: timedelta = AUTH_STATE_TTL) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.created_at > ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "code_verifier": self.code_verifier,
            "redirect_uri": self.redirect_uri,
            "timestamp": int(self.created_at.timestamp() * 1000),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizationState":
        """Parse a persisted state. Raises KeyError/TypeError/ValueError on bad shape."""
        return cls(
            state=str(data["state"]),
            code_verifier=str(data["code_verifier"]),
            redirect_uri=str(data["redirect_uri"]),
            created_at=datetime.fromtimestamp(int(data["timestamp"]) / 1000, tz=timezone.utc),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# ==============================================================================
# Session Store
# ==============================================================================


class SessionStore(ABC):
    """get/set/delete of opaque string values keyed by opaque ids"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class InMemorySessionStore(SessionStore):
    """Process-local store with per-key expiry, for tests and single-process use"""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


# ==============================================================================
# Authorization State Store
# ==============================================================================


class AuthStateStore:
    """
    Single-use, expiring authorization state on top of a SessionStore.

    ``consume`` deletes the stored state before validating it, so a replayed
    callback always finds nothing and is rejected.
    """

    def __init__(
        self,
        store: SessionStore,
        key: str = "epic_auth_state",
        ttl_seconds: int = int(AUTH_STATE_TTL.total_seconds()),
    ):
        self.store = store
        self.key = key
        self.ttl_seconds = ttl_seconds

    async def save(self, auth_state: AuthorizationState) -> None:
        await self.store.set(self.key, auth_state.to_json(), ttl_seconds=self.ttl_seconds)

    async def consume(self, presented_state: str, now: Optional[datetime] = None) -> AuthorizationState:
        """
        Load, invalidate and validate the pending authorization state.

        Raises:
            StateValidationError: missing_state, invalid_state, state_mismatch or state_expired
        """
        raw = await self.store.get(self.key)
        await self.store.delete(self.key)

        if raw is None:
            raise StateValidationError(StateValidationError.MISSING)

        try:
            auth_state = AuthorizationState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            raise StateValidationError(StateValidationError.INVALID)

        if auth_state.state != presented_state:
            logger.warning("auth_state_mismatch", key=self.key)
            raise StateValidationError(StateValidationError.MISMATCH)

        if auth_state.is_expired(now=now, ttl=timedelta(seconds=self.ttl_seconds)):
            raise StateValidationError(StateValidationError.EXPIRED)

        return auth_state

    async def discard(self) -> None:
        await self.store.delete(self.key)
