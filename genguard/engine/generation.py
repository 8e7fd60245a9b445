"""Client side of the external multi-phase generation service."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Protocol

import httpx
import structlog

from ..errors import GenerationServiceError

if TYPE_CHECKING:
    from ..orchestrator import Job


class GenerationService(Protocol):
    """The three phases a job runs through, each returning a JSON-like mapping."""

    async def phase0(self, job: "Job") -> dict[str, Any]:
        ...

    async def phase1(self, job: "Job", profile: Any) -> dict[str, Any]:
        ...

    async def phase2(self, job: "Job", batch_index: int, context: Mapping[str, Any]) -> dict[str, Any]:
        ...


class HttpGenerationClient:
    """Call the generation service over HTTP.

    Each phase is a ``POST {base_url}/{phase}`` with a JSON body. Non-2xx
    answers raise :class:`GenerationServiceError` carrying the status code so
    429/503 responses classify as transient; transport errors from httpx
    propagate unchanged.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        headers: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=dict(headers or {}))
        self.logger = logger or structlog.get_logger("genguard.generation")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpGenerationClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _post(self, phase: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{phase}"
        response = await self._client.post(url, json=body)
        if response.status_code >= 400:
            self.logger.warning(
                "generation_http_error",
                phase=phase,
                job_id=body.get("job_id"),
                status_code=response.status_code,
            )
            raise GenerationServiceError(
                response.text[:200] or response.reason_phrase, status_code=response.status_code
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationServiceError(f"{phase} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise GenerationServiceError(f"{phase} returned {type(data).__name__}, expected object")
        return data

    async def phase0(self, job: "Job") -> dict[str, Any]:
        return await self._post("phase0", {"job_id": job.id, "workflow_mode": job.workflow_mode})

    async def phase1(self, job: "Job", profile: Any) -> dict[str, Any]:
        return await self._post(
            "phase1",
            {"job_id": job.id, "workflow_mode": job.workflow_mode, "profile": profile},
        )

    async def phase2(
        self, job: "Job", batch_index: int, context: Mapping[str, Any]
    ) -> dict[str, Any]:
        return await self._post(
            "phase2",
            {
                "job_id": job.id,
                "workflow_mode": job.workflow_mode,
                "batch_index": batch_index,
                "context": dict(context),
            },
        )


__all__ = ["GenerationService", "HttpGenerationClient"]
