"""
Application configuration

Settings are loaded once from the environment (or a .env file) and treated as
immutable afterwards. Each client instance resolves the settings for one
identity context (patient or clinician) into a frozen ClientConfig.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

EPIC_SANDBOX_FHIR_BASE_URL = "https://fhir.epic.com/interconnect-fhir-oauth/api/FHIR/R4/"
EPIC_SANDBOX_AUTHORIZE_URL = "https://fhir.epic.com/interconnect-fhir-oauth/oauth2/authorize"
EPIC_SANDBOX_TOKEN_URL = "https://fhir.epic.com/interconnect-fhir-oauth/oauth2/token"

MIN_ENCRYPTION_KEY_LENGTH = 32


class ClientIdentity(str, Enum):
    """Identity context a client instance is bound to"""

    PATIENT = "patient"
    CLINICIAN = "clinician"


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "Epic SMART FHIR Client"
    ENVIRONMENT: str = "production"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Patient-launched context
    CLIENT_ID: str = ""
    REDIRECT_URI: str = "http://localhost:3000/auth/callback"
    FHIR_BASE_URL: str = EPIC_SANDBOX_FHIR_BASE_URL
    EPIC_AUTHORIZE_URL: str = EPIC_SANDBOX_AUTHORIZE_URL
    EPIC_TOKEN_URL: str = EPIC_SANDBOX_TOKEN_URL
    PATIENT_SCOPES: str = "patient/*.read openid profile"

    # Clinician-launched context (endpoints fall back to the patient values)
    CLINICIAN_CLIENT_ID: Optional[str] = None
    CLINICIAN_REDIRECT_URI: str = "http://localhost:3000/api/auth/clinician/callback"
    CLINICIAN_FHIR_BASE_URL: Optional[str] = None
    CLINICIAN_AUTHORIZE_URL: Optional[str] = None
    CLINICIAN_TOKEN_URL: Optional[str] = None
    CLINICIAN_SCOPES: str = "openid fhirUser profile user/*.read user/*.write"

    # Token encryption
    # IMPORTANT: never log or expose these values
    ENCRYPTION_KEY: str = ""
    ENCRYPTION_KEY_PREVIOUS: str = ""  # comma-separated retired keys, decrypt only

    # Mock mode: unset means "mock when no CLIENT_ID is configured"
    USE_MOCK_DATA: Optional[bool] = None
    TEST_PATIENT_ID: str = "eq081-VQEgP8drUUqCWzHfw3"

    # HTTP behaviour
    HTTP_TIMEOUT_SECONDS: float = 30.0
    FHIR_MAX_RETRIES: int = 3
    FHIR_RETRY_DELAY_SECONDS: float = 1.0
    FHIR_RETRY_BACKOFF_FACTOR: float = 2.0
    FHIR_MAX_RETRY_AFTER_SECONDS: float = 120.0  # upper bound on an honoured Retry-After

    # Lifetimes
    AUTH_STATE_TTL_SECONDS: int = 600  # 10 minutes
    REFRESH_TOKEN_TTL_SECONDS: int = 30 * 24 * 60 * 60  # 30 days

    # Bulk Data Export
    BULK_EXPORT_POLL_INTERVAL_SECONDS: int = 5
    BULK_EXPORT_GROUP_ID: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore", frozen=True)

    @property
    def mock_mode(self) -> bool:
        if self.USE_MOCK_DATA is not None:
            return self.USE_MOCK_DATA
        return not self.CLIENT_ID

    @property
    def previous_encryption_keys(self) -> List[str]:
        return [k.strip() for k in self.ENCRYPTION_KEY_PREVIOUS.split(",") if k.strip()]


# Global settings instance
settings = Settings()


@dataclass(frozen=True)
class ClientConfig:
    """Resolved, immutable configuration for one identity context"""

    identity: ClientIdentity
    client_id: str
    redirect_uri: str
    authorize_url: str
    token_url: str
    fhir_base_url: str
    scopes: Tuple[str, ...]
    use_mock: bool = False
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    retry_backoff_factor: float = 2.0
    max_retry_after_seconds: float = 120.0


def parse_scopes(raw: str) -> Tuple[str, ...]:
    """Split a space- or comma-separated scope string."""
    return tuple(s for s in raw.replace(",", " ").split() if s)


def normalize_base_url(url: str) -> str:
    return url.rstrip("/") + "/"


def resolve_client_config(
    identity: ClientIdentity = ClientIdentity.PATIENT,
    app_settings: Optional[Settings] = None,
) -> ClientConfig:
    """
    Resolve the configuration set for an identity context.

    Args:
        identity: Patient or clinician context
        app_settings: Settings to resolve from (defaults to the global instance)

    Returns:
        Frozen ClientConfig
    """
    s = app_settings or settings
    identity = ClientIdentity(identity)

    if identity == ClientIdentity.CLINICIAN:
        client_id = s.CLINICIAN_CLIENT_ID or s.CLIENT_ID
        redirect_uri = s.CLINICIAN_REDIRECT_URI
        base_url = s.CLINICIAN_FHIR_BASE_URL or s.FHIR_BASE_URL
        authorize_url = s.CLINICIAN_AUTHORIZE_URL or s.EPIC_AUTHORIZE_URL
        token_url = s.CLINICIAN_TOKEN_URL or s.EPIC_TOKEN_URL
        scopes = parse_scopes(s.CLINICIAN_SCOPES)
    else:
        client_id = s.CLIENT_ID
        redirect_uri = s.REDIRECT_URI
        base_url = s.FHIR_BASE_URL
        authorize_url = s.EPIC_AUTHORIZE_URL
        token_url = s.EPIC_TOKEN_URL
        scopes = parse_scopes(s.PATIENT_SCOPES)

    return ClientConfig(
        identity=identity,
        client_id=client_id,
        redirect_uri=redirect_uri,
        authorize_url=authorize_url,
        token_url=token_url,
        fhir_base_url=normalize_base_url(base_url),
        scopes=scopes,
        use_mock=s.mock_mode,
        timeout_seconds=s.HTTP_TIMEOUT_SECONDS,
        max_retries=s.FHIR_MAX_RETRIES,
        retry_delay_seconds=s.FHIR_RETRY_DELAY_SECONDS,
        retry_backoff_factor=s.FHIR_RETRY_BACKOFF_FACTOR,
        max_retry_after_seconds=s.FHIR_MAX_RETRY_AFTER_SECONDS,
    )


def validate_client_config(config: ClientConfig, encryption_key: str) -> List[str]:
    """
    Check a live-mode configuration. Mock mode is always valid.

    Returns:
        List of human-readable problems (empty when valid)
    """
    if config.use_mock:
        return []

    errors: List[str] = []
    prefix = "CLINICIAN_" if config.identity == ClientIdentity.CLINICIAN else ""

    if not config.client_id:
        errors.append(f"{prefix}CLIENT_ID is required for real Epic API integration")
    if not encryption_key or len(encryption_key) < MIN_ENCRYPTION_KEY_LENGTH:
        errors.append(f"ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters long")

    parsed = urlparse(config.redirect_uri)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        errors.append(f"{prefix}REDIRECT_URI must be an absolute http or https URL")

    return errors
