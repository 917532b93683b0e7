"""
Epic SMART on FHIR client core.

Usage:
    from epic_smart import ClientIdentity, EpicFHIRClient, InMemorySessionStore, SmartSessionManager

    client = EpicFHIRClient(ClientIdentity.PATIENT)
    session = SmartSessionManager(client, InMemorySessionStore())

    url = await session.begin_login()
    # ... redirect, then on callback:
    await session.complete_login(code, state)
    patient = await client.get_patient(await session.get_access_token(), "123")
"""

from .auth import InMemorySessionStore, SessionStore, SmartSessionManager, TokenCipher, TokenSet
from .core.config import ClientConfig, ClientIdentity, Settings, settings
from .core.exceptions import EpicSmartError
from .fhir import BulkExportJob, EpicFHIRClient, FHIRResourceType

__version__ = "1.0.0"

__all__ = [
    "BulkExportJob",
    "ClientConfig",
    "ClientIdentity",
    "EpicFHIRClient",
    "EpicSmartError",
    "FHIRResourceType",
    "InMemorySessionStore",
    "SessionStore",
    "Settings",
    "SmartSessionManager",
    "TokenCipher",
    "TokenSet",
    "settings",
]
