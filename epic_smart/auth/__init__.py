"""
SMART on FHIR authorization

Components:
- PKCE generator and authorization URL builder
- Authorization state with single-use, expiring persistence
- Token exchange (live and mock) and token encryption
- Session lifecycle over a pluggable SessionStore
"""

from .authorization import AuthorizationRequest, AuthorizationUrlBuilder
from .cipher import TokenCipher, derive_fernet_key, generate_encryption_key
from .pkce import PKCEPair, challenge_for, generate_verifier
from .session import SmartSessionManager
from .state import AuthorizationState, AuthStateStore, InMemorySessionStore, SessionStore
from .token_exchange import MockTokenExchange, TokenExchangeEngine, TokenExchanger, TokenSet

__all__ = [
    # Authorization
    "AuthorizationRequest",
    "AuthorizationUrlBuilder",
    "PKCEPair",
    "challenge_for",
    "generate_verifier",
    # State
    "AuthorizationState",
    "AuthStateStore",
    "InMemorySessionStore",
    "SessionStore",
    # Tokens
    "MockTokenExchange",
    "TokenExchangeEngine",
    "TokenExchanger",
    "TokenSet",
    "TokenCipher",
    "derive_fernet_key",
    "generate_encryption_key",
    # Session
    "SmartSessionManager",
]
