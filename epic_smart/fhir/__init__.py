"""
FHIR Integration Package

Components:
- EpicFHIRClient: identity-bound facade with typed resource operations
- FHIRBackend: request engine interface, with live (HTTP) and mock (in-memory) backends
- BulkExportOrchestrator: caller-driven Bulk Data Export state machine
- ResourceCache: optional read-through cache
"""

from .backend import FHIRBackend, LiveFHIRBackend, operation_error, parse_retry_after
from .bulk_export import (
    BulkExportJob,
    BulkExportOrchestrator,
    BulkExportOutput,
    BulkExportStatus,
    kickoff_path,
    parse_ndjson,
)
from .cache import InMemoryResourceCache, ResourceCache
from .client import EpicFHIRClient, ResourceEndpoint
from .mock_backend import MockFHIRBackend, seed_resources
from .resources import (
    FHIR_JSON,
    FHIR_NDJSON,
    FHIRResourceType,
    bundle_resources,
    extract_patient_id,
    format_fhir_date,
    get_display_name,
    parse_operation_outcome,
    validate_resource,
)

__all__ = [
    # Client
    "EpicFHIRClient",
    "ResourceEndpoint",
    # Backends
    "FHIRBackend",
    "LiveFHIRBackend",
    "MockFHIRBackend",
    "operation_error",
    "parse_retry_after",
    "seed_resources",
    # Bulk Data Export
    "BulkExportJob",
    "BulkExportOrchestrator",
    "BulkExportOutput",
    "BulkExportStatus",
    "kickoff_path",
    "parse_ndjson",
    # Cache
    "InMemoryResourceCache",
    "ResourceCache",
    # Resources
    "FHIR_JSON",
    "FHIR_NDJSON",
    "FHIRResourceType",
    "bundle_resources",
    "extract_patient_id",
    "format_fhir_date",
    "get_display_name",
    "parse_operation_outcome",
    "validate_resource",
]
