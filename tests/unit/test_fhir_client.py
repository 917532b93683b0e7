"""
Unit tests for the EpicFHIRClient facade: strategy selection, typed resource
operations, convenience methods and the read-through cache.
"""

import json

import httpx
import pytest
from epic_smart.auth.token_exchange import MockTokenExchange, TokenExchangeEngine
from epic_smart.core.config import ClientIdentity
from epic_smart.fhir.backend import LiveFHIRBackend
from epic_smart.fhir.cache import InMemoryResourceCache
from epic_smart.fhir.client import EpicFHIRClient
from epic_smart.fhir.mock_backend import MockFHIRBackend
from epic_smart.fhir.resources import FHIRResourceType


class RecordingUpstream:
    """Records requests and answers with a handler-supplied response."""

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.respond(request)


@pytest.fixture
def upstream():
    def respond(request):
        if request.method == "POST":
            return httpx.Response(201, json={**json.loads(request.content), "id": "new-1"})
        if request.method == "DELETE":
            return httpx.Response(204)
        if request.method == "PUT":
            return httpx.Response(200, json=json.loads(request.content))
        if request.url.path.endswith("/Patient/123"):
            return httpx.Response(200, json={"resourceType": "Patient", "id": "123"})
        return httpx.Response(200, json={"resourceType": "Bundle", "type": "searchset", "total": 0, "entry": []})

    return RecordingUpstream(respond)


@pytest.fixture
def live_client(live_settings, audit_service, upstream, http_client_for):
    return EpicFHIRClient(
        ClientIdentity.PATIENT,
        live_settings,
        audit_service=audit_service,
        http_client=http_client_for(upstream),
    )


class TestStrategySelection:
    """Live/mock strategies are chosen once at construction."""

    def test_live_mode(self, live_client):
        assert isinstance(live_client.backend, LiveFHIRBackend)
        assert isinstance(live_client.token_exchanger, TokenExchangeEngine)
        assert live_client.use_mock is False

    def test_mock_mode(self, mock_settings):
        client = EpicFHIRClient(ClientIdentity.PATIENT, mock_settings)
        assert isinstance(client.backend, MockFHIRBackend)
        assert isinstance(client.token_exchanger, MockTokenExchange)

    def test_mock_mode_without_key_uses_ephemeral_cipher(self, settings_factory):
        client = EpicFHIRClient(ClientIdentity.PATIENT, settings_factory(CLIENT_ID="", USE_MOCK_DATA=None, ENCRYPTION_KEY=""))
        assert client.decrypt(client.encrypt("value")) == "value"

    def test_injected_backend_wins(self, live_settings, live_config, audit_service):
        backend = MockFHIRBackend(live_config, audit_service)
        client = EpicFHIRClient(ClientIdentity.PATIENT, live_settings, backend=backend)
        assert client.backend is backend

    def test_identity_bound(self, live_settings):
        client = EpicFHIRClient("clinician", live_settings)
        assert client.identity == ClientIdentity.CLINICIAN


class TestResourceOperations:
    @pytest.mark.asyncio
    async def test_create_patient_posts_exact_body(self, live_client, upstream, live_settings):
        """POST to .../Patient with the exact body; result carries the server id."""
        patient = {"resourceType": "Patient", "name": [{"family": "Test"}]}

        created = await live_client.create_patient("token", patient)

        request = upstream.requests[0]
        assert request.method == "POST"
        assert str(request.url) == live_settings.FHIR_BASE_URL + "Patient"
        assert json.loads(request.content) == patient
        assert created == {"resourceType": "Patient", "name": [{"family": "Test"}], "id": "new-1"}

    @pytest.mark.asyncio
    async def test_read(self, live_client, upstream):
        patient = await live_client.get_patient("token", "123")
        assert patient["id"] == "123"
        assert upstream.requests[0].url.path.endswith("/Patient/123")

    @pytest.mark.asyncio
    async def test_update_puts_to_id(self, live_client, upstream):
        body = {"resourceType": "Appointment", "id": "a1", "status": "cancelled"}
        updated = await live_client.appointments.update("token", "a1", body)

        request = upstream.requests[0]
        assert request.method == "PUT"
        assert request.url.path.endswith("/Appointment/a1")
        assert updated == body

    @pytest.mark.asyncio
    async def test_delete_expects_204(self, live_client, upstream):
        assert await live_client.conditions.delete("token", "c1") is None
        assert upstream.requests[0].method == "DELETE"

    @pytest.mark.asyncio
    async def test_search_drops_empty_params(self, live_client, upstream):
        bundle = await live_client.search_patients("token", family="Doe", given=None)

        assert bundle["resourceType"] == "Bundle"
        assert dict(upstream.requests[0].url.params) == {"family": "Doe"}

    @pytest.mark.parametrize(
        "accessor,resource_type",
        [
            ("patients", "Patient"),
            ("appointments", "Appointment"),
            ("conditions", "Condition"),
            ("observations", "Observation"),
            ("medication_requests", "MedicationRequest"),
            ("allergy_intolerances", "AllergyIntolerance"),
            ("immunizations", "Immunization"),
            ("document_references", "DocumentReference"),
            ("explanation_of_benefits", "ExplanationOfBenefit"),
            ("charge_items", "ChargeItem"),
        ],
    )
    def test_typed_accessors(self, live_client, accessor, resource_type):
        endpoint = getattr(live_client, accessor)
        assert endpoint.name == resource_type
        assert getattr(live_client, accessor) is endpoint

    def test_generic_accessor(self, live_client):
        assert live_client.resource("Practitioner").resource_type == FHIRResourceType.PRACTITIONER


class TestConvenienceOperations:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,resource_type",
        [
            ("get_patient_conditions", "Condition"),
            ("get_patient_medications", "MedicationRequest"),
            ("get_patient_allergies", "AllergyIntolerance"),
            ("get_patient_appointments", "Appointment"),
            ("get_patient_observations", "Observation"),
        ],
    )
    async def test_patient_scoped_searches(self, live_client, upstream, method, resource_type):
        await getattr(live_client, method)("token", "123")

        request = upstream.requests[0]
        assert request.url.path.endswith(f"/{resource_type}")
        assert request.url.params["patient"] == "123"

    @pytest.mark.asyncio
    async def test_observation_filters(self, live_client, upstream):
        await live_client.get_patient_observations("token", "123", category="laboratory", code="4548-4")
        params = upstream.requests[0].url.params
        assert params["category"] == "laboratory"
        assert params["code"] == "4548-4"
        assert "date" not in params

    @pytest.mark.asyncio
    async def test_create_appointment(self, live_client, upstream):
        created = await live_client.create_appointment("token", {"resourceType": "Appointment", "status": "proposed"})
        assert created["id"] == "new-1"
        assert upstream.requests[0].url.path.endswith("/Appointment")


class TestResourceCache:
    """Optional read-through cache."""

    @pytest.fixture
    def cached_client(self, live_settings, audit_service, upstream, http_client_for):
        return EpicFHIRClient(
            ClientIdentity.PATIENT,
            live_settings,
            audit_service=audit_service,
            http_client=http_client_for(upstream),
            resource_cache=InMemoryResourceCache(),
        )

    @pytest.mark.asyncio
    async def test_read_hits_cache(self, cached_client, upstream):
        await cached_client.get_patient("token", "123")
        await cached_client.get_patient("token", "123")
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_bypass_cache(self, cached_client, upstream):
        await cached_client.patients.read("token", "123")
        await cached_client.patients.read("token", "123", use_cache=False)
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_create_populates_and_delete_evicts(self, cached_client, upstream):
        await cached_client.create_patient("token", {"resourceType": "Patient"})
        assert cached_client.resource_cache.get("Patient", "new-1") is not None

        await cached_client.patients.delete("token", "new-1")
        assert cached_client.resource_cache.get("Patient", "new-1") is None

    @pytest.mark.asyncio
    async def test_update_refreshes_entry(self, cached_client, upstream):
        assert len(cached_client.resource_cache) == 0
        await cached_client.patients.update("token", "123", {"resourceType": "Patient", "id": "123", "gender": "male"})

        cached = await cached_client.patients.read("token", "123")

        assert cached["gender"] == "male"
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_caller_mutation_does_not_leak_into_cache(self, cached_client, upstream):
        first = await cached_client.get_patient("token", "123")
        first["id"] = "changed"

        second = await cached_client.get_patient("token", "123")

        assert second["id"] == "123"
        assert len(upstream.requests) == 1


class TestInMemoryResourceCache:
    def test_ttl_expiry(self):
        cache = InMemoryResourceCache(ttl_seconds=-1)
        cache.set("Patient", "1", {"id": "1"})
        assert cache.get("Patient", "1") is None

    def test_evicts_oldest(self):
        cache = InMemoryResourceCache(max_entries=2)
        cache.set("Patient", "1", {})
        cache.set("Patient", "2", {})
        cache.set("Patient", "3", {})

        assert cache.get("Patient", "1") is None
        assert len(cache) == 2

    def test_stores_copies(self):
        cache = InMemoryResourceCache()
        resource = {"resourceType": "Patient", "id": "1"}
        cache.set("Patient", "1", resource)
        resource["id"] = "2"

        assert cache.get("Patient", "1")["id"] == "1"
        cache.get("Patient", "1")["id"] = "3"
        assert cache.get("Patient", "1")["id"] == "1"

    def test_keys_scoped_by_type(self):
        cache = InMemoryResourceCache()
        cache.set("Patient", "1", {"resourceType": "Patient"})
        assert cache.get("Observation", "1") is None
        cache.clear()
        assert len(cache) == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_async_context_manager(self, mock_settings):
        async with EpicFHIRClient(ClientIdentity.PATIENT, mock_settings) as client:
            assert client.use_mock
