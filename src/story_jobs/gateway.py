"""
Job API gateway.

``ApiGateway`` is the interface the JobManager and Pollers consume;
``HttpApiGateway`` implements it over aiohttp against:

    POST /jobs                      (Idempotency-Key header) -> {jobId}
    GET  /jobs/{jobId}              -> status snapshot
    GET  /jobs/{jobId}/result       -> artifact payload
    GET  /jobs?idempotencyKey=<key> -> status snapshot (reconciliation)

Error mapping:
- timeouts, connection failures, 5xx and unparseable bodies -> TransportError
- 404 -> RemoteJobNotFoundError
- 409 -> ServerConflictError (carries the server's active job id)
- any other 4xx -> GatewayError (not retryable)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from .errors import (
    ErrorContext,
    GatewayError,
    RemoteJobNotFoundError,
    ServerConflictError,
    TransportError,
)
from .logging import get_logger
from .serialization import fast_json_dumps, fast_json_loads
from .types import Artifact, JobStatusSnapshot

logger = get_logger("story_jobs.gateway")


class ApiGateway(ABC):
    """Abstract interface to the asynchronous job API."""

    @abstractmethod
    async def create_job(self, request: dict[str, Any], idempotency_key: str) -> str:
        """Submit a generation request. Returns the server job id."""
        ...

    @abstractmethod
    async def get_job_status(self, job_id: str) -> JobStatusSnapshot:
        """Fetch the current status of a job."""
        ...

    @abstractmethod
    async def fetch_result(self, job_id: str) -> Artifact:
        """Fetch the artifact of a completed job."""
        ...

    @abstractmethod
    async def lookup_job(self, idempotency_key: str) -> JobStatusSnapshot | None:
        """Find the job created for an idempotency key, if the server has one."""
        ...

    async def close(self) -> None:
        return


class HttpApiGateway(ApiGateway):
    """aiohttp implementation of the job API.

    The session is created lazily and owned by the gateway unless one is
    passed in.
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str | None = None,
        timeout: float = 30.0,
        user_agent: str = "story-jobs",
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.user_agent = user_agent
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        job_id: str | None = None,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        session = await self._get_session()
        context = ErrorContext(job_id=job_id, operation=operation)
        request_headers = self._headers(headers)
        data = None
        if body is not None:
            data = fast_json_dumps(body)
            request_headers["Content-Type"] = "application/json"

        try:
            async with session.request(
                method,
                f"{self.base_url}{path}",
                data=data,
                params=params,
                headers=request_headers,
            ) as response:
                raw = await response.read()
                status = response.status
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{operation} timed out", context=context, cause=exc) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{operation} failed: {exc}", context=context, cause=exc) from exc

        payload = self._parse_body(raw)

        if status >= 500:
            raise TransportError(
                f"{operation} returned HTTP {status}",
                http_status=status,
                payload=payload,
                context=context,
            )
        if status == 404:
            raise RemoteJobNotFoundError(
                f"{operation}: job not found",
                payload=payload,
                context=context,
            )
        if status == 409:
            raise ServerConflictError(
                active_job_id=(payload or {}).get("activeJobId") or (payload or {}).get("jobId"),
                payload=payload,
                context=context,
            )
        if status >= 400:
            message = (payload or {}).get("error") or f"HTTP {status}"
            raise GatewayError(
                f"{operation} rejected: {message}",
                http_status=status,
                payload=payload,
                context=context,
            )
        if payload is None:
            raise TransportError(
                f"{operation} returned an unreadable body",
                http_status=status,
                context=context,
            )
        return payload

    @staticmethod
    def _parse_body(raw: bytes) -> dict[str, Any] | None:
        if not raw:
            return None
        try:
            parsed = fast_json_loads(raw)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        # Some deployments wrap bodies as {"success": true, "job": {...}}
        inner = parsed.get("job")
        if isinstance(inner, dict):
            return inner
        return parsed

    @staticmethod
    def _snapshot(payload: dict[str, Any], job_id: str | None) -> JobStatusSnapshot:
        try:
            return JobStatusSnapshot.from_dict(payload)
        except (ValueError, TypeError) as exc:
            raise TransportError(
                f"Unrecognised job status payload: {exc}",
                payload=payload,
                context=ErrorContext(job_id=job_id, operation="get_job_status"),
                cause=exc,
            ) from exc

    async def create_job(self, request: dict[str, Any], idempotency_key: str) -> str:
        payload = await self._request(
            "POST",
            "/jobs",
            operation="create_job",
            body=request,
            headers={"Idempotency-Key": idempotency_key},
        )
        job_id = payload.get("jobId")
        if not job_id:
            raise TransportError(
                "create_job response carried no jobId",
                payload=payload,
                context=ErrorContext(operation="create_job"),
            )
        logger.debug("Job created", job_id=job_id, idempotency_key=idempotency_key)
        return str(job_id)

    async def get_job_status(self, job_id: str) -> JobStatusSnapshot:
        payload = await self._request(
            "GET",
            f"/jobs/{job_id}",
            operation="get_job_status",
            job_id=job_id,
        )
        return self._snapshot(payload, job_id)

    async def fetch_result(self, job_id: str) -> Artifact:
        payload = await self._request(
            "GET",
            f"/jobs/{job_id}/result",
            operation="fetch_result",
            job_id=job_id,
        )
        return Artifact.from_dict(job_id, payload)

    async def lookup_job(self, idempotency_key: str) -> JobStatusSnapshot | None:
        try:
            payload = await self._request(
                "GET",
                "/jobs",
                operation="lookup_job",
                params={"idempotencyKey": idempotency_key},
            )
        except RemoteJobNotFoundError:
            return None
        if not payload.get("jobId"):
            return None
        return self._snapshot(payload, payload.get("jobId"))

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


__all__ = ["ApiGateway", "HttpApiGateway"]
