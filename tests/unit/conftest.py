from __future__ import annotations

import os

# Keep the module-level settings importable without a real Epic registration.
# These defaults are only applied when the variables are not already set.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-0123456789abcdef")

import httpx  # noqa: E402
import pytest  # noqa: E402

from epic_smart.core.audit_service import AuditService  # noqa: E402
from epic_smart.core.config import ClientIdentity, Settings, resolve_client_config  # noqa: E402

TEST_ENCRYPTION_KEY = "unit-test-encryption-key-0123456789abcdef"
FHIR_BASE = "https://fhir.example.org/api/FHIR/R4/"
TOKEN_URL = "https://fhir.example.org/oauth2/token"
AUTHORIZE_URL = "https://fhir.example.org/oauth2/authorize"


def make_settings(**overrides) -> Settings:
    values = {
        "CLIENT_ID": "abc",
        "REDIRECT_URI": "http://x/cb",
        "FHIR_BASE_URL": FHIR_BASE,
        "EPIC_AUTHORIZE_URL": AUTHORIZE_URL,
        "EPIC_TOKEN_URL": TOKEN_URL,
        "PATIENT_SCOPES": "patient/Patient.Read",
        "ENCRYPTION_KEY": TEST_ENCRYPTION_KEY,
        "USE_MOCK_DATA": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def live_settings() -> Settings:
    return make_settings()


@pytest.fixture
def mock_settings() -> Settings:
    return make_settings(CLIENT_ID="", USE_MOCK_DATA=True)


@pytest.fixture
def live_config(live_settings):
    return resolve_client_config(ClientIdentity.PATIENT, live_settings)


@pytest.fixture
def audit_service() -> AuditService:
    return AuditService()


@pytest.fixture
def http_client_for():
    """Build an AsyncClient whose requests are answered by ``handler``."""
    clients = []

    def _factory(handler) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    return _factory
