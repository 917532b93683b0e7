"""
SMART authorization URL construction.
"""

import uuid
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import urlencode

from epic_smart.auth.pkce import PKCEPair
from epic_smart.auth.state import AuthorizationState
from epic_smart.core.config import ClientConfig
from epic_smart.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AuthorizationRequest:
    """Authorization URL plus the state the caller must persist"""

    url: str
    state: AuthorizationState


class AuthorizationUrlBuilder:
    """
    Builds SMART standalone-launch authorization URLs.

    No network call and no persistence: the returned AuthorizationState is
    handed to the caller, who stores it until the callback arrives.
    """

    def __init__(self, config: ClientConfig):
        self.config = config

    def build(self, scopes: Optional[Sequence[str]] = None) -> AuthorizationRequest:
        pkce = PKCEPair.generate()
        state = str(uuid.uuid4())
        scope_list = list(scopes) if scopes else list(self.config.scopes)

        auth_state = AuthorizationState(
            state=state,
            code_verifier=pkce.code_verifier,
            redirect_uri=self.config.redirect_uri,
        )

        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": auth_state.redirect_uri,
            "scope": " ".join(scope_list),
            "code_challenge_method": pkce.method,
            "code_challenge": pkce.code_challenge,
            "state": state,
            "aud": self.config.fhir_base_url,
        }

        url = f"{self.config.authorize_url}?{urlencode(params)}"

        logger.info(
            "authorization_url_generated",
            identity=self.config.identity.value,
            scope_count=len(scope_list),
        )
        return AuthorizationRequest(url=url, state=auth_state)
