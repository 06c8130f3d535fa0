"""Client for the external job service.

Long-running work (file parsing, vectorization, PEP web search) runs as
"threads" on an external batch scheduler that drives Tripwire's
``/internal`` callbacks. Tripwire only creates threads and polls their
status.

Wire format:
    POST /threads       {"task_type", "job_params", "metadata"} -> {"id"}
    GET  /threads/{id}  -> {"status", "progress", "phase"}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tripwire.http_client import JsonApiClient

TASK_PARSE_SOURCE = "parse_source"
TASK_VECTORIZE_INDEX = "vectorize_index"
TASK_PEP_SEARCH = "pep_search"


@dataclass(frozen=True)
class ThreadStatus:
    """Status snapshot of a job service thread."""

    id: str
    status: str
    progress: float = 0.0
    phase: str | None = None


class JobServiceError(Exception):
    """Raised when a job service call fails."""


class JobServiceClient(JsonApiClient):
    """Async client for the job service."""

    error_class = JobServiceError
    service_name = "Job service"

    async def create_thread(
        self,
        task_type: str,
        job_params: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Queue a job and return its thread id."""
        parsed = await self._request(
            "POST",
            "/threads",
            {"task_type": task_type, "job_params": job_params, "metadata": metadata or {}},
        )
        thread_id = parsed.get("id")
        if not thread_id:
            raise JobServiceError("Job service response is missing the thread id")
        return str(thread_id)

    async def get_thread(self, thread_id: str) -> ThreadStatus:
        parsed = await self._request("GET", f"/threads/{thread_id}")
        try:
            progress = float(parsed.get("progress") or 0)
        except (TypeError, ValueError):
            progress = 0.0
        phase = parsed.get("phase")
        return ThreadStatus(
            id=thread_id,
            status=str(parsed.get("status", "")).upper(),
            progress=progress,
            phase=str(phase) if phase else None,
        )
