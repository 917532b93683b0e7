"""
Bulk Data Export orchestration.

A job moves Idle -> InProgress -> Complete | Failed. The orchestrator owns no
timer: the caller drives the job by calling ``poll_status`` again after
``job.next_poll_in`` seconds and stops whenever it likes. Jobs are immutable
values; every transition returns a new job.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from epic_smart.core.audit_service import AuditEventType, AuditService
from epic_smart.core.exceptions import BulkExportFailedError, MalformedKickoffResponseError
from epic_smart.core.logging import get_logger
from epic_smart.fhir.backend import FHIRBackend, operation_error, parse_retry_after
from epic_smart.fhir.resources import FHIR_JSON, FHIR_NDJSON

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5


class BulkExportStatus(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class BulkExportOutput:
    """One output file listed in a completed export manifest"""

    type: str
    url: str
    count: Optional[int] = None
    requires_access_token: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any], requires_access_token: bool = True) -> "BulkExportOutput":
        count = data.get("count")
        return cls(
            type=data["type"],
            url=data["url"],
            count=int(count) if count is not None else None,
            requires_access_token=requires_access_token,
        )


@dataclass(frozen=True)
class BulkExportJob:
    """Snapshot of an export job"""

    status: BulkExportStatus = BulkExportStatus.IDLE
    status_url: Optional[str] = None
    progress: Optional[str] = None
    retry_after: Optional[float] = None
    manifest: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    kicked_off_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in (BulkExportStatus.COMPLETE, BulkExportStatus.FAILED)

    @property
    def outputs(self) -> Tuple[BulkExportOutput, ...]:
        if not self.manifest:
            return ()
        requires_token = bool(self.manifest.get("requiresAccessToken", True))
        return tuple(BulkExportOutput.from_dict(o, requires_token) for o in self.manifest.get("output", []))

    @property
    def next_poll_in(self) -> float:
        """Seconds the caller should wait before polling again"""
        if self.retry_after is not None:
            return self.retry_after
        return self.poll_interval_seconds


def parse_ndjson(text: str) -> List[Dict[str, Any]]:
    """Decode newline-delimited JSON, skipping blank lines."""
    resources = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            resources.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise BulkExportFailedError(f"Invalid NDJSON on line {line_number}: {e.msg}") from e
    return resources


def validate_manifest(body: Any) -> Optional[str]:
    """Reason a completion body is not a usable manifest, or None when it is."""
    if not isinstance(body, dict):
        return "Export manifest is not a JSON object"
    outputs = body.get("output")
    if not isinstance(outputs, list):
        return "Export manifest has no output list"
    for entry in outputs:
        if not isinstance(entry, dict) or not isinstance(entry.get("type"), str) or not isinstance(entry.get("url"), str):
            return "Export manifest output entries need a type and url"
    return None


def kickoff_path(group_id: Optional[str] = None, patient_level: bool = False) -> str:
    """System-, Patient- or Group-level ``$export`` path"""
    if group_id:
        return f"Group/{group_id}/$export"
    if patient_level:
        return "Patient/$export"
    return "$export"


class BulkExportOrchestrator:
    """Drives the Bulk Data Export protocol over a FHIRBackend"""

    def __init__(
        self,
        backend: FHIRBackend,
        audit_service: Optional[AuditService] = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        self.backend = backend
        self.audit_service = audit_service or backend.audit_service
        self.poll_interval_seconds = poll_interval_seconds

    async def kick_off(
        self,
        access_token: str,
        group_id: Optional[str] = None,
        patient_level: bool = False,
        resource_types: Optional[Sequence[str]] = None,
        since: Optional[Union[datetime, str]] = None,
    ) -> BulkExportJob:
        """
        Start an asynchronous export.

        Args:
            access_token: Bearer token
            group_id: Export a Group's members (takes precedence over patient_level)
            patient_level: Export all patients instead of the whole system
            resource_types: ``_type`` filter
            since: ``_since`` filter

        Returns:
            InProgress job carrying the status URL

        Raises:
            MalformedKickoffResponseError: 2xx other than 202, or no Content-Location
            FHIROperationError: upstream rejected the kick-off
        """
        path = kickoff_path(group_id, patient_level)
        params: Dict[str, str] = {}
        if resource_types:
            params["_type"] = ",".join(resource_types)
        if since:
            params["_since"] = since.isoformat() if isinstance(since, datetime) else since

        response = await self.backend.send(
            "GET",
            path,
            access_token,
            params=params or None,
            headers={"Prefer": "respond-async", "Accept": FHIR_JSON},
        )

        if not response.is_success:
            await self._audit(AuditEventType.BULK_EXPORT_KICKOFF, "failure", path, response.status_code)
            raise operation_error(response)

        status_url = response.headers.get("Content-Location")
        if response.status_code != 202 or not status_url:
            await self._audit(AuditEventType.BULK_EXPORT_KICKOFF, "failure", path, response.status_code)
            raise MalformedKickoffResponseError(
                f"Expected 202 Accepted with Content-Location, got {response.status_code}"
                + ("" if status_url else " without Content-Location"),
                status_code=response.status_code,
            )

        await self._audit(AuditEventType.BULK_EXPORT_KICKOFF, "success", path, response.status_code)
        logger.info("bulk_export_kicked_off", scope=path, resource_types=list(resource_types or []))

        now = datetime.now(timezone.utc)
        return BulkExportJob(
            status=BulkExportStatus.IN_PROGRESS,
            status_url=status_url,
            poll_interval_seconds=self.poll_interval_seconds,
            kicked_off_at=now,
            updated_at=now,
        )

    async def poll_status(self, access_token: str, job: BulkExportJob) -> BulkExportJob:
        """
        Fetch the job's status once.

        A Complete job is returned unchanged without a request.

        Raises:
            BulkExportFailedError: job already Failed, or never kicked off
        """
        if job.status == BulkExportStatus.COMPLETE:
            return job
        if job.status == BulkExportStatus.FAILED:
            raise BulkExportFailedError(
                "Export job failed; start a new export",
                status_code=job.status_code,
                diagnostics=job.error,
            )
        if not job.status_url:
            raise BulkExportFailedError("Export job has not been kicked off")

        response = await self.backend.send(
            "GET",
            job.status_url,
            access_token,
            headers={"Accept": "application/json"},
        )
        now = datetime.now(timezone.utc)

        manifest, error = None, response.text
        if response.status_code == 200:
            manifest, error = self._read_manifest(response)

        if response.status_code == 202:
            next_job = replace(
                job,
                progress=response.headers.get("X-Progress"),
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                updated_at=now,
            )
            outcome = "in_progress"
        elif manifest is not None:
            next_job = replace(
                job,
                status=BulkExportStatus.COMPLETE,
                manifest=manifest,
                progress=None,
                retry_after=None,
                status_code=200,
                updated_at=now,
            )
            outcome = "success"
        else:
            next_job = replace(
                job,
                status=BulkExportStatus.FAILED,
                error=error,
                status_code=response.status_code,
                retry_after=None,
                updated_at=now,
            )
            outcome = "failure"
            logger.warning("bulk_export_failed", status_code=response.status_code)

        await self._audit(
            AuditEventType.BULK_EXPORT_STATUS,
            outcome,
            None,
            response.status_code,
            status=next_job.status.value,
            progress=next_job.progress,
        )
        return next_job

    async def fetch_output(
        self,
        access_token: str,
        output: Union[BulkExportOutput, str],
    ) -> List[Dict[str, Any]]:
        """
        Download one manifest file and parse it.

        Raises:
            BulkExportFailedError: non-2xx file response or malformed NDJSON
        """
        if isinstance(output, BulkExportOutput):
            url = output.url
            # Files hosted outside the FHIR server may not expect our bearer token
            token = access_token if output.requires_access_token else ""
        else:
            url, token = output, access_token
        response = await self.backend.send("GET", url, token, headers={"Accept": FHIR_NDJSON})

        if not response.is_success:
            await self._audit(AuditEventType.BULK_EXPORT_FILE, "failure", None, response.status_code)
            raise BulkExportFailedError(
                f"Failed to fetch export file: {response.status_code}",
                status_code=response.status_code,
                diagnostics=response.text,
            )

        resources = parse_ndjson(response.text)
        await self._audit(
            AuditEventType.BULK_EXPORT_FILE,
            "success",
            None,
            response.status_code,
            resource_type=output.type if isinstance(output, BulkExportOutput) else None,
            count=len(resources),
        )
        return resources

    @staticmethod
    def _read_manifest(response) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """(manifest, None) for a usable completion body, else (None, reason)"""
        try:
            body = response.json()
        except ValueError:
            return None, "Export manifest is not valid JSON"
        reason = validate_manifest(body)
        return (None, reason) if reason else (body, None)

    async def _audit(
        self,
        event_type: AuditEventType,
        outcome: str,
        endpoint: Optional[str],
        status_code: Optional[int],
        resource_type: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        await self.audit_service.record(
            event_type,
            outcome="success" if outcome == "in_progress" else outcome,
            identity=self.backend.config.identity.value,
            endpoint=endpoint,
            method="GET",
            resource_type=resource_type,
            status_code=status_code,
            metadata=metadata,
        )
