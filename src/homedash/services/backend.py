"""Request/response wrappers around the dashboard backend API.

Issue calls raise :class:`IssueFailed` with the backend's ``error`` message;
probe calls raise :class:`ProbeTransientError` so the tracker can retry them.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from homedash.core.errors import IssueFailed, ProbeTransientError
from homedash.core.models import JobAck, JobStatus, ProcessStatus, ReachabilityResult, Service
from homedash.services.http_client import HttpClient
from homedash.utils.logging import get_logger


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


class DashboardClient:
    """Typed access to the service, process, ping and job endpoints."""

    def __init__(self, http_client: HttpClient) -> None:
        self.http_client = http_client
        self.logger = get_logger(self.__class__.__name__)

    @retry(
        retry=retry_if_exception_type(httpx.HTTPError),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.2, max=2.0, jitter=0.2),
        reraise=True,
    )
    async def list_services(self) -> List[Service]:
        async with self.http_client.session() as client:
            response = await client.get("/api/services")
            response.raise_for_status()
            return [Service.model_validate(item) for item in response.json() or []]

    async def ping_all(self) -> List[ReachabilityResult]:
        async with self.http_client.session() as client:
            response = await client.get("/api/ping-all")
            response.raise_for_status()
            return [ReachabilityResult.model_validate(item) for item in response.json() or []]

    async def measure_latency(self) -> int:
        """Round trip of a trivial request, in milliseconds."""
        async with self.http_client.session() as client:
            started = time.perf_counter()
            response = await client.get("/api/ping", headers={"Cache-Control": "no-cache"})
            response.raise_for_status()
            return round((time.perf_counter() - started) * 1000)

    # Commands ------------------------------------------------------------------------

    async def _issue(self, path: str, *, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with self.http_client.session() as client:
                response = await client.post(path, json=json)
        except httpx.HTTPError as exc:
            raise IssueFailed(str(exc) or exc.__class__.__name__) from exc
        if response.is_error:
            raise IssueFailed(_error_message(response))
        try:
            body = response.json()
        except ValueError:
            body = {}
        return body if isinstance(body, dict) else {}

    async def issue_launch(self, service_id: str) -> Dict[str, Any]:
        return await self._issue(f"/api/services/{service_id}/launch")

    async def issue_stop(self, service_id: str) -> Dict[str, Any]:
        return await self._issue(f"/api/services/{service_id}/stop")

    async def issue_job(self, definition: Dict[str, Any]) -> JobAck:
        body = await self._issue("/api/comfyui/workflow/execute", json={"workflow": definition})
        try:
            return JobAck.model_validate(body)
        except ValidationError as exc:
            raise IssueFailed("Backend did not return a job id") from exc

    # Probes --------------------------------------------------------------------------

    async def _probe(self, path: str) -> Any:
        try:
            async with self.http_client.session() as client:
                response = await client.get(path)
        except httpx.HTTPError as exc:
            raise ProbeTransientError(str(exc) or exc.__class__.__name__) from exc
        if response.is_error:
            raise ProbeTransientError(_error_message(response))
        try:
            return response.json()
        except ValueError as exc:
            raise ProbeTransientError("Malformed status payload") from exc

    async def probe_process_status(self, service_id: str) -> ProcessStatus:
        body = await self._probe(f"/api/services/{service_id}/process-status")
        try:
            return ProcessStatus.model_validate(body)
        except ValidationError as exc:
            raise ProbeTransientError(f"Malformed process status: {exc}") from exc

    async def probe_job_status(self, job_id: str) -> JobStatus:
        body = await self._probe(f"/api/comfyui/workflow/status/{job_id}")
        try:
            status = JobStatus.model_validate(body)
        except ValidationError as exc:
            raise ProbeTransientError(f"Malformed job status: {exc}") from exc
        return status.model_copy(update={"job_id": job_id})
