"""
FHIR Request Engine

Backends carry authenticated FHIR REST calls to an upstream. The live backend
attaches the bearer token and FHIR content negotiation headers, retries rate
limiting (HTTP 429) and network-level failures with bounded exponential backoff,
and turns non-2xx responses into FHIROperationError. Every terminal outcome is
audited with endpoint, status and resource type only; payloads never reach the
audit trail or the logs.
"""

import asyncio
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from epic_smart.core.audit_service import AuditEventType, AuditService
from epic_smart.core.config import ClientConfig
from epic_smart.core.exceptions import FHIROperationError, RateLimitExceededError, TransientRequestError
from epic_smart.core.logging import get_logger
from epic_smart.fhir.resources import FHIR_JSON, first_diagnostics, parse_operation_outcome

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def resource_type_of(path: str) -> Optional[str]:
    """First path segment of a relative FHIR path (``Patient/1`` -> ``Patient``)."""
    segment = urlsplit(path).path.lstrip("/").split("/", 1)[0]
    return segment or None


class _RateLimited(Exception):
    """Internal signal for a 429 response"""

    def __init__(self, response: httpx.Response):
        super().__init__(f"Rate limited: {response.status_code}")
        self.response = response
        self.retry_after = parse_retry_after(response.headers.get("Retry-After"))


# ==============================================================================
# Backend interface
# ==============================================================================


class FHIRBackend(ABC):
    """
    Transport for FHIR REST calls.

    Implementations provide ``send``; ``request`` layers JSON decoding, error
    mapping and auditing on top of it and is shared by all backends.
    """

    def __init__(self, config: ClientConfig, audit_service: Optional[AuditService] = None):
        self.config = config
        self.audit_service = audit_service or AuditService()

    @property
    def base_url(self) -> str:
        return self.config.fhir_base_url

    def build_url(self, path_or_url: str) -> str:
        """Resolve a relative resource path against the base URL; absolute URLs pass through."""
        if urlsplit(path_or_url).scheme:
            return path_or_url
        return urljoin(self.base_url, path_or_url.lstrip("/"))

    @abstractmethod
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
        """Issue one logical request and return the final upstream response."""

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Perform a FHIR REST call and decode the JSON body.

        Args:
            method: HTTP method
            path: Resource path relative to the base URL (``Patient/123``)
            access_token: Bearer token for this call only
            params: Query-string search parameters
            json_body: Resource to send

        Returns:
            Decoded JSON body, or None for an empty 2xx response (e.g. 204)

        Raises:
            FHIROperationError: upstream returned non-2xx
            RateLimitExceededError: 429 persisted beyond the retry budget
            TransientRequestError: network failure persisted beyond the retry budget
        """
        resource_type = resource_type_of(path)
        endpoint = urlsplit(path).path

        response = await self.send(
            method,
            path,
            access_token,
            params=params,
            json_body=json_body,
            headers=headers,
        )

        if not response.is_success:
            error = operation_error(response)
            await self._audit(
                AuditEventType.FHIR_REQUEST_ERROR,
                "failure",
                method=method,
                endpoint=endpoint,
                resource_type=resource_type,
                status_code=response.status_code,
            )
            logger.warning(
                "fhir_request_failed",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
            )
            raise error

        body: Optional[Dict[str, Any]] = None
        if response.status_code != 204 and response.content:
            try:
                body = response.json()
            except ValueError:
                await self._audit(
                    AuditEventType.FHIR_REQUEST_ERROR,
                    "failure",
                    method=method,
                    endpoint=endpoint,
                    resource_type=resource_type,
                    status_code=response.status_code,
                )
                logger.warning("fhir_response_undecodable", method=method, endpoint=endpoint)
                raise FHIROperationError(
                    f"FHIR response was not valid JSON: {response.status_code}",
                    status_code=response.status_code,
                    diagnostics=response.text,
                )

        await self._audit(
            AuditEventType.FHIR_REQUEST_SUCCESS,
            "success",
            method=method,
            endpoint=endpoint,
            resource_type=resource_type,
            status_code=response.status_code,
        )
        return body

    async def _audit(self, event_type: AuditEventType, outcome: str, **kwargs: Any) -> None:
        await self.audit_service.record(
            event_type,
            outcome=outcome,
            identity=self.config.identity.value,
            **kwargs,
        )


def operation_error(response: httpx.Response) -> FHIROperationError:
    """Map a non-2xx response to FHIROperationError, preferring OperationOutcome diagnostics."""
    body: Any = None
    try:
        body = response.json()
    except ValueError:
        body = None

    outcome = parse_operation_outcome(body)
    if outcome is not None:
        diagnostics = first_diagnostics(outcome)
        if diagnostics:
            return FHIROperationError(
                diagnostics,
                status_code=response.status_code,
                diagnostics=diagnostics,
                issues=outcome["issue"],
            )

    return FHIROperationError(
        f"FHIR request failed: {response.status_code} {response.reason_phrase}",
        status_code=response.status_code,
        diagnostics=response.text,
        issues=outcome["issue"] if outcome else None,
    )


# ==============================================================================
# Live backend
# ==============================================================================


class LiveFHIRBackend(FHIRBackend):
    """
    HTTP backend against a real FHIR server.

    Retries are sequential: HTTP 429 honours Retry-After when present, otherwise
    (and for transport errors) the delay is
    ``retry_delay_seconds * retry_backoff_factor ** attempt``. Other non-2xx
    responses are returned to ``request`` immediately.
    """

    def __init__(
        self,
        config: ClientConfig,
        audit_service: Optional[AuditService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        super().__init__(config, audit_service)
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    async def initialize(self) -> None:
        """Initialize HTTP client"""
        if self._client is not None:
            return

        self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        self._owns_client = True
        logger.info("fhir_backend_initialized", base_url=self.base_url)

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self, access_token: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Accept": FHIR_JSON,
            "Content-Type": FHIR_JSON,
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        if extra:
            headers.update(extra)
        return headers

    def _backoff(self, attempt: int) -> float:
        return self.config.retry_delay_seconds * (self.config.retry_backoff_factor**attempt)

    def _wait(self, retry_state) -> float:
        attempt = retry_state.attempt_number - 1
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, _RateLimited) and error.retry_after is not None:
            return min(error.retry_after, self.config.max_retry_after_seconds)
        return self._backoff(attempt)

    def _before_sleep(self, retry_state) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "fhir_request_retrying",
            attempt=retry_state.attempt_number,
            reason=type(error).__name__,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        )

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
        if self._client is None:
            await self.initialize()

        url = self.build_url(path_or_url)
        request_headers = self._headers(access_token, headers)
        endpoint = urlsplit(path_or_url).path

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception_type((_RateLimited, httpx.TransportError)),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.request(
                        method,
                        url,
                        params=params,
                        json=json_body,
                        headers=request_headers,
                        timeout=self.config.timeout_seconds,
                    )
                    if response.status_code == 429:
                        raise _RateLimited(response)
        except _RateLimited as e:
            await self._audit(
                AuditEventType.FHIR_REQUEST_ERROR,
                "failure",
                method=method,
                endpoint=endpoint,
                resource_type=resource_type_of(path_or_url),
                status_code=429,
            )
            raise RateLimitExceededError(
                f"Rate limit exceeded after {self.config.max_retries} retries",
                status_code=429,
                diagnostics=e.response.text or None,
            ) from e
        except httpx.TransportError as e:
            await self._audit(
                AuditEventType.FHIR_REQUEST_ERROR,
                "failure",
                method=method,
                endpoint=endpoint,
                resource_type=resource_type_of(path_or_url),
                metadata={"error": type(e).__name__},
            )
            raise TransientRequestError(
                f"FHIR request failed after {self.config.max_retries} retries: {type(e).__name__}"
            ) from e

        return response
