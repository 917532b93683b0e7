"""
FHIR resource types and small helpers for the shapes the client needs to drive
requests: OperationOutcome decoding, Bundle unwrapping and display utilities.
This is not a validation engine.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

FHIR_JSON = "application/fhir+json"
FHIR_NDJSON = "application/fhir+ndjson"


class FHIRResourceType(str, Enum):
    """FHIR R4 resource types handled by the client"""

    PATIENT = "Patient"
    APPOINTMENT = "Appointment"
    CONDITION = "Condition"
    OBSERVATION = "Observation"
    MEDICATION_REQUEST = "MedicationRequest"
    ALLERGY_INTOLERANCE = "AllergyIntolerance"
    IMMUNIZATION = "Immunization"
    DOCUMENT_REFERENCE = "DocumentReference"
    EXPLANATION_OF_BENEFIT = "ExplanationOfBenefit"
    CHARGE_ITEM = "ChargeItem"

    # Read-only context resources
    PRACTITIONER = "Practitioner"
    DIAGNOSTIC_REPORT = "DiagnosticReport"
    PROCEDURE = "Procedure"


def parse_operation_outcome(body: Any) -> Optional[Dict[str, Any]]:
    """Return the body if it is an OperationOutcome with issues, else None."""
    if not isinstance(body, dict):
        return None
    if body.get("resourceType") != "OperationOutcome":
        return None
    if not isinstance(body.get("issue"), list):
        return None
    return body


def first_diagnostics(outcome: Dict[str, Any]) -> Optional[str]:
    """Diagnostics text of the first issue, falling back to details.text."""
    issues = outcome.get("issue") or []
    if not issues:
        return None
    first = issues[0] or {}
    return first.get("diagnostics") or (first.get("details") or {}).get("text")


def bundle_resources(bundle: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Resources from a searchset Bundle's entries"""
    return [entry["resource"] for entry in bundle.get("entry", []) if "resource" in entry]


def make_bundle(resources: List[Dict[str, Any]], bundle_type: str = "searchset") -> Dict[str, Any]:
    return {
        "resourceType": "Bundle",
        "type": bundle_type,
        "total": len(resources),
        "entry": [{"resource": r, "search": {"mode": "match"}} for r in resources],
    }


def validate_resource(resource: Any) -> bool:
    """Minimal structural check: a dict carrying a resourceType."""
    return isinstance(resource, dict) and bool(resource.get("resourceType"))


_PATIENT_REF = re.compile(r"Patient/(.+)")


def extract_patient_id(reference: str) -> Optional[str]:
    """``Patient/123`` -> ``123``"""
    match = _PATIENT_REF.search(reference or "")
    return match.group(1) if match else None


def format_fhir_date(fhir_date: str) -> str:
    """FHIR date/dateTime to M/D/YYYY; unparseable input is returned as is."""
    try:
        parsed = datetime.fromisoformat(fhir_date.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return fhir_date
    return f"{parsed.month}/{parsed.day}/{parsed.year}"


def get_display_name(names: Optional[List[Dict[str, Any]]]) -> str:
    """Human-readable name from a HumanName list, preferring the official one."""
    if not names:
        return "Unknown"

    official = next((n for n in names if n.get("use") == "official"), names[0])
    given = " ".join(official.get("given") or [])
    family = official.get("family") or ""

    return f"{given} {family}".strip() or "Unknown"
