"""
Epic FHIR client

Facade bound to one identity context (patient or clinician). The live/mock
choice is made once, at construction, by selecting the FHIRBackend and
TokenExchanger strategies; no method branches on mock mode afterwards.

Features:
- SMART authorization URL generation with PKCE
- Code exchange and token refresh
- Token encryption for storage
- Typed CRUD/search per resource type with an optional read-through cache
- Bulk Data Export orchestration
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from epic_smart.auth.authorization import AuthorizationRequest, AuthorizationUrlBuilder
from epic_smart.auth.cipher import TokenCipher, generate_encryption_key
from epic_smart.auth.state import AuthorizationState
from epic_smart.auth.token_exchange import MockTokenExchange, TokenExchangeEngine, TokenExchanger, TokenSet
from epic_smart.core.audit_service import AuditService
from epic_smart.core.config import ClientIdentity, Settings, resolve_client_config, settings, validate_client_config
from epic_smart.core.exceptions import ConfigurationError
from epic_smart.core.logging import get_logger
from epic_smart.fhir.backend import FHIRBackend, LiveFHIRBackend, SleepFunc
from epic_smart.fhir.bulk_export import BulkExportJob, BulkExportOrchestrator, BulkExportOutput
from epic_smart.fhir.cache import ResourceCache
from epic_smart.fhir.mock_backend import MOCK_PATIENT_ID, MockFHIRBackend
from epic_smart.fhir.resources import FHIRResourceType

logger = get_logger(__name__)


class ResourceEndpoint:
    """CRUD and search for one resource type"""

    def __init__(
        self,
        backend: FHIRBackend,
        resource_type: FHIRResourceType,
        cache: Optional[ResourceCache] = None,
    ):
        self.backend = backend
        self.resource_type = FHIRResourceType(resource_type)
        self.cache = cache

    @property
    def name(self) -> str:
        return self.resource_type.value

    async def create(self, access_token: str, resource: Dict[str, Any]) -> Dict[str, Any]:
        """POST to the resource root; returns the resource with its server-assigned id."""
        created = await self.backend.request("POST", self.name, access_token, json_body=resource)
        result = {**resource, **(created or {})}
        if self.cache is not None and result.get("id"):
            self.cache.set(self.name, result["id"], result)
        return result

    async def read(self, access_token: str, resource_id: str, use_cache: bool = True) -> Dict[str, Any]:
        if self.cache is not None and use_cache:
            cached = self.cache.get(self.name, resource_id)
            if cached is not None:
                logger.debug("resource_cache_hit", resource_type=self.name)
                return cached

        resource = await self.backend.request("GET", f"{self.name}/{resource_id}", access_token)
        if self.cache is not None and resource:
            self.cache.set(self.name, resource_id, resource)
        return resource

    async def update(self, access_token: str, resource_id: str, resource: Dict[str, Any]) -> Dict[str, Any]:
        """PUT ``ResourceType/{id}``. Body/path id agreement is the caller's check."""
        updated = await self.backend.request("PUT", f"{self.name}/{resource_id}", access_token, json_body=resource)
        result = updated or resource
        if self.cache is not None:
            self.cache.set(self.name, resource_id, result)
        return result

    async def delete(self, access_token: str, resource_id: str) -> None:
        await self.backend.request("DELETE", f"{self.name}/{resource_id}", access_token)
        if self.cache is not None:
            self.cache.delete(self.name, resource_id)

    async def search(
        self,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """GET the resource root with search parameters; returns a searchset Bundle."""
        query = {k: v for k, v in {**(params or {}), **kwargs}.items() if v is not None and v != ""}
        return await self.backend.request("GET", self.name, access_token, params=query or None)


class EpicFHIRClient:
    """
    SMART on FHIR client for Epic.

    Usage:
        async with EpicFHIRClient(ClientIdentity.CLINICIAN) as client:
            login = client.generate_auth_url()
            ...
            token = await client.exchange_code(code, login.state)
            bundle = await client.conditions.search(token.access_token, patient="123")
    """

    def __init__(
        self,
        identity: Union[ClientIdentity, str] = ClientIdentity.PATIENT,
        app_settings: Optional[Settings] = None,
        *,
        backend: Optional[FHIRBackend] = None,
        token_exchanger: Optional[TokenExchanger] = None,
        cipher: Optional[TokenCipher] = None,
        audit_service: Optional[AuditService] = None,
        resource_cache: Optional[ResourceCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        s = app_settings or settings
        self.settings = s
        self.config = resolve_client_config(ClientIdentity(identity), s)

        errors = validate_client_config(self.config, s.ENCRYPTION_KEY)
        if errors:
            raise ConfigurationError("Epic configuration is invalid: " + "; ".join(errors), errors=errors)

        self.audit_service = audit_service or AuditService()
        self.cipher = cipher or self._build_cipher(s)

        if self.config.use_mock:
            self.backend = backend or MockFHIRBackend(self.config, self.audit_service)
            self.token_exchanger = token_exchanger or MockTokenExchange(
                self.config, self.audit_service, patient_id=MOCK_PATIENT_ID
            )
        else:
            self.backend = backend or LiveFHIRBackend(self.config, self.audit_service, http_client, sleep=sleep)
            self.token_exchanger = token_exchanger or TokenExchangeEngine(self.config, self.audit_service, http_client)

        self.resource_cache = resource_cache
        self.bulk_export = BulkExportOrchestrator(
            self.backend,
            self.audit_service,
            poll_interval_seconds=s.BULK_EXPORT_POLL_INTERVAL_SECONDS,
        )
        self._url_builder = AuthorizationUrlBuilder(self.config)
        self._endpoints: Dict[FHIRResourceType, ResourceEndpoint] = {}

        logger.info(
            "epic_client_created",
            identity=self.config.identity.value,
            mock=self.config.use_mock,
            base_url=self.config.fhir_base_url,
        )

    def _build_cipher(self, s: Settings) -> TokenCipher:
        if s.ENCRYPTION_KEY:
            return TokenCipher.from_settings(s)
        # Only reachable in mock mode; live mode fails validation without a key
        logger.warning("ephemeral_encryption_key", reason="ENCRYPTION_KEY not configured")
        return TokenCipher(generate_encryption_key())

    @property
    def identity(self) -> ClientIdentity:
        return self.config.identity

    @property
    def use_mock(self) -> bool:
        return self.config.use_mock

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        await self.backend.initialize()

    async def close(self) -> None:
        await self.backend.close()

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # Authentication
    # =========================================================================

    def generate_auth_url(self, scopes: Optional[Sequence[str]] = None) -> AuthorizationRequest:
        """Authorization URL plus the AuthorizationState the caller must persist"""
        return self._url_builder.build(scopes)

    async def exchange_code(self, code: str, auth_state: AuthorizationState) -> TokenSet:
        return await self.token_exchanger.exchange_code(code, auth_state)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        return await self.token_exchanger.refresh(refresh_token)

    def encrypt(self, plaintext: str) -> str:
        return self.cipher.encrypt(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        return self.cipher.decrypt(ciphertext)

    # =========================================================================
    # Core request
    # =========================================================================

    async def request(
        self,
        method: str,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        return await self.backend.request(method, path, access_token, params=params, json_body=json_body)

    def resource(self, resource_type: Union[FHIRResourceType, str]) -> ResourceEndpoint:
        resource_type = FHIRResourceType(resource_type)
        endpoint = self._endpoints.get(resource_type)
        if endpoint is None:
            endpoint = ResourceEndpoint(self.backend, resource_type, self.resource_cache)
            self._endpoints[resource_type] = endpoint
        return endpoint

    @property
    def patients(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.PATIENT)

    @property
    def appointments(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.APPOINTMENT)

    @property
    def conditions(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.CONDITION)

    @property
    def observations(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.OBSERVATION)

    @property
    def medication_requests(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.MEDICATION_REQUEST)

    @property
    def allergy_intolerances(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.ALLERGY_INTOLERANCE)

    @property
    def immunizations(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.IMMUNIZATION)

    @property
    def document_references(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.DOCUMENT_REFERENCE)

    @property
    def explanation_of_benefits(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.EXPLANATION_OF_BENEFIT)

    @property
    def charge_items(self) -> ResourceEndpoint:
        return self.resource(FHIRResourceType.CHARGE_ITEM)

    # =========================================================================
    # Patient convenience operations
    # =========================================================================

    async def search_patients(
        self,
        access_token: str,
        family: Optional[str] = None,
        given: Optional[str] = None,
        birthdate: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.patients.search(
            access_token,
            family=family,
            given=given,
            birthdate=birthdate,
            identifier=identifier,
        )

    async def get_patient(self, access_token: str, patient_id: str) -> Dict[str, Any]:
        return await self.patients.read(access_token, patient_id)

    async def create_patient(self, access_token: str, patient: Dict[str, Any]) -> Dict[str, Any]:
        return await self.patients.create(access_token, patient)

    async def get_patient_appointments(
        self,
        access_token: str,
        patient_id: str,
        date: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.appointments.search(access_token, patient=patient_id, date=date, status=status)

    async def create_appointment(self, access_token: str, appointment: Dict[str, Any]) -> Dict[str, Any]:
        return await self.appointments.create(access_token, appointment)

    async def get_patient_observations(
        self,
        access_token: str,
        patient_id: str,
        category: Optional[str] = None,
        code: Optional[str] = None,
        date: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.observations.search(
            access_token,
            patient=patient_id,
            category=category,
            code=code,
            date=date,
        )

    async def get_patient_conditions(self, access_token: str, patient_id: str) -> Dict[str, Any]:
        return await self.conditions.search(access_token, patient=patient_id)

    async def get_patient_medications(self, access_token: str, patient_id: str) -> Dict[str, Any]:
        return await self.medication_requests.search(access_token, patient=patient_id)

    async def get_patient_allergies(self, access_token: str, patient_id: str) -> Dict[str, Any]:
        return await self.allergy_intolerances.search(access_token, patient=patient_id)

    # =========================================================================
    # Bulk Data Export
    # =========================================================================

    async def kick_off_bulk_export(
        self,
        access_token: str,
        group_id: Optional[str] = None,
        patient_level: bool = False,
        resource_types: Optional[Sequence[str]] = None,
        since: Optional[Union[datetime, str]] = None,
    ) -> BulkExportJob:
        """Start an export; ``group_id`` defaults to BULK_EXPORT_GROUP_ID for system-level calls."""
        if group_id is None and not patient_level:
            group_id = self.settings.BULK_EXPORT_GROUP_ID
        return await self.bulk_export.kick_off(
            access_token,
            group_id=group_id,
            patient_level=patient_level,
            resource_types=resource_types,
            since=since,
        )

    async def poll_bulk_export(self, access_token: str, job: BulkExportJob) -> BulkExportJob:
        return await self.bulk_export.poll_status(access_token, job)

    async def fetch_bulk_export_file(
        self,
        access_token: str,
        output: Union[BulkExportOutput, str],
    ) -> List[Dict[str, Any]]:
        return await self.bulk_export.fetch_output(access_token, output)
