"""
Mock FHIR backend

An in-memory stand-in for the Epic sandbox used in mock mode and in tests. It
answers through the same ``send`` contract as the live backend, so the shared
request pipeline (error mapping, auditing) runs unchanged on top of it.
"""

import copy
import itertools
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from epic_smart.core.audit_service import AuditService
from epic_smart.core.config import ClientConfig
from epic_smart.core.logging import get_logger
from epic_smart.fhir.backend import FHIRBackend
from epic_smart.fhir.resources import FHIR_JSON, FHIR_NDJSON, make_bundle

logger = get_logger(__name__)

MOCK_PATIENT_ID = "mock-patient-123"
SECOND_MOCK_PATIENT_ID = "mock-patient-456"

_STATUS_SEGMENT = "bulkstatus"
_FILE_SEGMENT = "bulkfiles"


def _coding(system: str, code: str, display: Optional[str] = None) -> Dict[str, Any]:
    coding = {"system": system, "code": code}
    if display:
        coding["display"] = display
    return {"coding": [coding]}


def _mock_patient(patient_id: str, family: str, given: List[str], gender: str, birth_date: str) -> Dict[str, Any]:
    return {
        "resourceType": "Patient",
        "id": patient_id,
        "meta": {"lastUpdated": "2024-01-15T10:30:00Z"},
        "identifier": [{"use": "usual", "system": "http://hospital.smarthealthit.org", "value": patient_id}],
        "active": True,
        "name": [{"use": "official", "family": family, "given": given}],
        "telecom": [
            {"system": "phone", "value": "555-0123", "use": "home"},
            {"system": "email", "value": f"{given[0].lower()}.{family.lower()}@example.com", "use": "home"},
        ],
        "gender": gender,
        "birthDate": birth_date,
        "address": [
            {
                "use": "home",
                "type": "both",
                "line": ["123 Main St", "Apt 4B"],
                "city": "Boston",
                "state": "MA",
                "postalCode": "02101",
                "country": "US",
            }
        ],
    }


def seed_resources(patient_id: str = MOCK_PATIENT_ID) -> List[Dict[str, Any]]:
    """Demo dataset: two patients plus clinical resources for the first one."""
    subject = {"reference": f"Patient/{patient_id}"}
    return [
        _mock_patient(patient_id, "Doe", ["John", "Michael"], "male", "1985-03-15"),
        _mock_patient(SECOND_MOCK_PATIENT_ID, "Smith", ["Jane"], "female", "1990-07-22"),
        {
            "resourceType": "Observation",
            "id": "obs-vitals-1",
            "status": "final",
            "category": [
                _coding(
                    "http://terminology.hl7.org/CodeSystem/observation-category",
                    "vital-signs",
                    "Vital Signs",
                )
            ],
            "code": _coding("http://loinc.org", "8480-6", "Systolic blood pressure"),
            "subject": subject,
            "effectiveDateTime": "2024-01-15T10:30:00Z",
            "valueQuantity": {"value": 120, "unit": "mmHg", "system": "http://unitsofmeasure.org", "code": "mm[Hg]"},
        },
        {
            "resourceType": "Observation",
            "id": "obs-lab-1",
            "status": "final",
            "category": [
                _coding(
                    "http://terminology.hl7.org/CodeSystem/observation-category",
                    "laboratory",
                    "Laboratory",
                )
            ],
            "code": _coding("http://loinc.org", "33747-0", "Hemoglobin A1c"),
            "subject": subject,
            "effectiveDateTime": "2024-01-10T09:00:00Z",
            "valueQuantity": {"value": 6.2, "unit": "%", "system": "http://unitsofmeasure.org", "code": "%"},
        },
        {
            "resourceType": "Condition",
            "id": "condition-1",
            "clinicalStatus": _coding("http://terminology.hl7.org/CodeSystem/condition-clinical", "active"),
            "verificationStatus": _coding("http://terminology.hl7.org/CodeSystem/condition-ver-status", "confirmed"),
            "category": [
                _coding(
                    "http://terminology.hl7.org/CodeSystem/condition-category",
                    "problem-list-item",
                    "Problem List Item",
                )
            ],
            "code": _coding("http://snomed.info/sct", "73211009", "Diabetes mellitus"),
            "subject": subject,
            "onsetDateTime": "2020-05-15",
            "recordedDate": "2020-05-15T14:30:00Z",
        },
        {
            "resourceType": "MedicationRequest",
            "id": "med-1",
            "status": "active",
            "intent": "order",
            "medicationCodeableConcept": _coding(
                "http://www.nlm.nih.gov/research/umls/rxnorm",
                "860975",
                "Metformin 500 MG Oral Tablet",
            ),
            "subject": subject,
            "authoredOn": "2024-01-01T10:00:00Z",
            "dosageInstruction": [
                {
                    "text": "Take 1 tablet by mouth twice daily with meals",
                    "timing": {"repeat": {"frequency": 2, "period": 1, "periodUnit": "d"}},
                }
            ],
        },
        {
            "resourceType": "AllergyIntolerance",
            "id": "allergy-1",
            "clinicalStatus": _coding(
                "http://terminology.hl7.org/CodeSystem/allergyintolerance-clinical",
                "active",
            ),
            "verificationStatus": _coding(
                "http://terminology.hl7.org/CodeSystem/allergyintolerance-verification",
                "confirmed",
            ),
            "type": "allergy",
            "category": ["medication"],
            "criticality": "high",
            "code": _coding("http://www.nlm.nih.gov/research/umls/rxnorm", "7980", "Penicillin"),
            "patient": subject,
            "recordedDate": "2020-01-15T10:00:00Z",
            "reaction": [
                {
                    "manifestation": [_coding("http://snomed.info/sct", "247472004", "Hives")],
                    "severity": "moderate",
                }
            ],
        },
        {
            "resourceType": "Appointment",
            "id": "appt-1",
            "status": "booked",
            "serviceType": [
                _coding(
                    "http://terminology.hl7.org/CodeSystem/service-type",
                    "124",
                    "General Practice",
                )
            ],
            "description": "Annual physical examination",
            "start": "2024-02-15T10:00:00Z",
            "end": "2024-02-15T11:00:00Z",
            "minutesDuration": 60,
            "participant": [
                {
                    "actor": {**subject, "display": "John Doe"},
                    "required": "required",
                    "status": "accepted",
                },
                {
                    "actor": {"reference": "Practitioner/dr-smith", "display": "Dr. Smith"},
                    "required": "required",
                    "status": "accepted",
                },
            ],
        },
    ]


def _outcome(code: str, diagnostics: str, severity: str = "error") -> Dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": severity, "code": code, "diagnostics": diagnostics}],
    }


def _references_patient(resource: Dict[str, Any], patient_id: str) -> bool:
    reference = f"Patient/{patient_id}"
    if resource.get("resourceType") == "Patient":
        return resource.get("id") == patient_id
    for key in ("subject", "patient"):
        if (resource.get(key) or {}).get("reference") == reference:
            return True
    return any((p.get("actor") or {}).get("reference") == reference for p in resource.get("participant", []))


@dataclass
class _MockExportJob:
    job_id: str
    request_url: str
    resource_types: List[str]
    polls_remaining: int


class MockFHIRBackend(FHIRBackend):
    """
    In-memory FHIR server.

    Supports create/read/update/delete and search (``patient``/``subject``,
    ``family``, ``category``, ``_id``) with server-assigned ids, and a simulated
    Bulk Data Export: kick-off answers 202 with a status URL, status polls answer
    202 with ``X-Progress`` ``export_polls`` times, then 200 with a manifest whose
    files are served as NDJSON.
    """

    def __init__(
        self,
        config: ClientConfig,
        audit_service: Optional[AuditService] = None,
        seed: Optional[List[Dict[str, Any]]] = None,
        export_polls: int = 3,
    ):
        super().__init__(config, audit_service)
        self.export_polls = export_polls
        self._store: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._jobs: Dict[str, _MockExportJob] = {}
        self._ids = itertools.count(1)
        self.calls: List[Dict[str, Any]] = []

        for resource in seed if seed is not None else seed_resources():
            self._put(resource)

    # =========================================================================
    # Store helpers
    # =========================================================================

    def _put(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(resource)
        stored.setdefault("meta", {})["lastUpdated"] = datetime.now(timezone.utc).isoformat()
        self._store.setdefault(stored["resourceType"], {})[stored["id"]] = stored
        return copy.deepcopy(stored)

    def resources(self, resource_type: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._store.get(resource_type, {}).values()]

    def _new_id(self, resource_type: str) -> str:
        return f"mock-{resource_type.lower()}-{next(self._ids)}"

    # =========================================================================
    # Transport
    # =========================================================================

    async def send(
        self,
        method: str,
        path_or_url: str,
        access_token: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = self.build_url(path_or_url)
        method = method.upper()
        request = httpx.Request(method, url, params=params)
        self.calls.append({"method": method, "url": url, "params": dict(params or {}), "json": json_body})
        logger.debug("mock_fhir_request", method=method, path=request.url.path)

        if not access_token:
            return self._json(request, 401, _outcome("login", "Missing bearer token"))

        relative = url[len(self.base_url) :] if url.startswith(self.base_url) else request.url.path
        segments = [s for s in relative.split("?", 1)[0].split("/") if s]
        query = {k: v for k, v in request.url.params.items()}

        if segments and segments[-1] == "$export":
            return self._kick_off(request, segments[:-1], query)
        if segments[:1] == [_STATUS_SEGMENT] and len(segments) == 2:
            return self._poll(request, segments[1])
        if segments[:1] == [_FILE_SEGMENT] and len(segments) == 3:
            return self._file(request, segments[1], segments[2])

        if len(segments) == 1:
            if method == "GET":
                return self._search(request, segments[0], query)
            if method == "POST":
                return self._create(request, segments[0], json_body)
        elif len(segments) == 2:
            resource_type, resource_id = segments
            if method == "GET":
                return self._read(request, resource_type, resource_id)
            if method == "PUT":
                return self._update(request, resource_type, resource_id, json_body)
            if method == "DELETE":
                return self._delete(request, resource_type, resource_id)

        return self._json(request, 400, _outcome("not-supported", f"Unsupported operation {method} {relative}"))

    def _json(
        self,
        request: httpx.Request,
        status_code: int,
        body: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        response_headers = {"Content-Type": FHIR_JSON}
        response_headers.update(headers or {})
        return httpx.Response(status_code, content=json.dumps(body).encode(), headers=response_headers, request=request)

    def _not_found(self, request: httpx.Request, resource_type: str, resource_id: str) -> httpx.Response:
        return self._json(request, 404, _outcome("not-found", f"Resource {resource_type}/{resource_id} not found"))

    # =========================================================================
    # REST operations
    # =========================================================================

    def _search(self, request: httpx.Request, resource_type: str, query: Dict[str, str]) -> httpx.Response:
        matches = list(self._store.get(resource_type, {}).values())

        patient = query.get("patient") or query.get("subject")
        if patient:
            patient_id = patient.split("/")[-1]
            matches = [r for r in matches if _references_patient(r, patient_id)]
        if query.get("_id"):
            matches = [r for r in matches if r.get("id") == query["_id"]]
        if query.get("family"):
            family = query["family"].lower()
            matches = [r for r in matches if family in ((r.get("name") or [{}])[0].get("family") or "").lower()]
        if query.get("category"):
            category = query["category"]
            matches = [
                r
                for r in matches
                if any(c.get("code") == category for cat in r.get("category", []) for c in cat.get("coding", []))
            ]

        return self._json(request, 200, make_bundle([copy.deepcopy(r) for r in matches]))

    def _create(self, request: httpx.Request, resource_type: str, body: Optional[Dict[str, Any]]) -> httpx.Response:
        if not body or body.get("resourceType") != resource_type:
            return self._json(request, 400, _outcome("invalid", f"Body must be a {resource_type} resource"))

        resource = dict(body)
        resource["id"] = self._new_id(resource_type)
        stored = self._put(resource)
        return self._json(request, 201, stored, headers={"Location": f"{resource_type}/{stored['id']}"})

    def _read(self, request: httpx.Request, resource_type: str, resource_id: str) -> httpx.Response:
        resource = self._store.get(resource_type, {}).get(resource_id)
        if resource is None:
            return self._not_found(request, resource_type, resource_id)
        return self._json(request, 200, copy.deepcopy(resource))

    def _update(
        self,
        request: httpx.Request,
        resource_type: str,
        resource_id: str,
        body: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        if not body or body.get("resourceType") != resource_type:
            return self._json(request, 400, _outcome("invalid", f"Body must be a {resource_type} resource"))

        existed = resource_id in self._store.get(resource_type, {})
        stored = self._put({**body, "id": resource_id})
        return self._json(request, 200 if existed else 201, stored)

    def _delete(self, request: httpx.Request, resource_type: str, resource_id: str) -> httpx.Response:
        if self._store.get(resource_type, {}).pop(resource_id, None) is None:
            return self._not_found(request, resource_type, resource_id)
        return httpx.Response(204, request=request)

    # =========================================================================
    # Bulk Data Export
    # =========================================================================

    def _kick_off(self, request: httpx.Request, scope: List[str], query: Dict[str, str]) -> httpx.Response:
        if scope and scope[0] == "Group" and (len(scope) != 2 or scope[1] not in self._store.get("Group", {})):
            group_id = scope[1] if len(scope) > 1 else ""
            return self._not_found(request, "Group", group_id)

        if query.get("_type"):
            resource_types = [t.strip() for t in query["_type"].split(",") if t.strip()]
        else:
            resource_types = sorted(t for t, rs in self._store.items() if rs and t != "Group")

        job_id = uuid.uuid4().hex
        self._jobs[job_id] = _MockExportJob(
            job_id=job_id,
            request_url=str(request.url),
            resource_types=resource_types,
            polls_remaining=self.export_polls,
        )
        status_url = self.build_url(f"{_STATUS_SEGMENT}/{job_id}")
        return httpx.Response(202, headers={"Content-Location": status_url}, request=request)

    def _poll(self, request: httpx.Request, job_id: str) -> httpx.Response:
        job = self._jobs.get(job_id)
        if job is None:
            return self._json(request, 404, _outcome("not-found", f"Export job {job_id} not found"))

        if job.polls_remaining > 0:
            done = self.export_polls - job.polls_remaining
            job.polls_remaining -= 1
            progress = f"{int(100 * done / max(self.export_polls, 1))}% complete"
            return httpx.Response(202, headers={"X-Progress": progress}, request=request)

        manifest = {
            "transactionTime": datetime.now(timezone.utc).isoformat(),
            "request": job.request_url,
            "requiresAccessToken": True,
            "output": [
                {
                    "type": resource_type,
                    "url": self.build_url(f"{_FILE_SEGMENT}/{job_id}/{resource_type}.ndjson"),
                    "count": len(self._store.get(resource_type, {})),
                }
                for resource_type in job.resource_types
            ],
            "error": [],
        }
        return self._json(request, 200, manifest, headers={"Content-Type": "application/json"})

    def _file(self, request: httpx.Request, job_id: str, file_name: str) -> httpx.Response:
        resource_type = file_name.rsplit(".", 1)[0]
        job = self._jobs.get(job_id)
        if job is None or resource_type not in job.resource_types:
            return self._json(request, 404, _outcome("not-found", f"Export file {file_name} not found"))

        lines = [json.dumps(r) for r in self._store.get(resource_type, {}).values()]
        body = "\n".join(lines) + ("\n" if lines else "")
        return httpx.Response(200, content=body.encode(), headers={"Content-Type": FHIR_NDJSON}, request=request)
