import asyncio
from typing import Any, Dict

import aiohttp
from pydantic import BaseModel, Field, JsonValue, ValidationError as PayloadValidationError

from job_scheduler.domain.job import Job
from job_scheduler.errors import ExecutionError
from job_scheduler.executors.protocol import JobExecutor


class HttpCallPayload(BaseModel):
    url: str = Field(..., description="The URL to make the HTTP request to")
    method: str = Field("GET", description="The HTTP method to use (e.g. GET, POST, PUT, DELETE)")
    headers: Dict[str, str] = Field(default={}, description="Optional headers to include in the request")
    body: Dict[str, Any] = Field(default={}, description="Optional body payload for the request")
    params: Dict[str, str] = Field(default={}, description="Optional query parameters for the request")


class HttpJobExecutor(JobExecutor):
    """
    Job executor for making HTTP requests using aiohttp.

    A response with status >= 400 counts as a failure so that it is retried.
    """

    def __init__(self, timeout_s: float = 30.0):
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)

    @staticmethod
    def executor_name() -> str:
        return "http"

    async def async_execute(self, job: Job) -> JsonValue:
        """
        Asynchronously execute the given job by making an HTTP request.

        Args:
            job (Job): The job whose payload describes the request.
        """
        try:
            payload = HttpCallPayload.model_validate(job.payload)
        except PayloadValidationError as e:
            raise ExecutionError(f"Invalid payload: {e}", cause=e) from e

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(
                    method=payload.method,
                    url=payload.url,
                    headers=payload.headers,
                    params=payload.params,
                    json=payload.body or None
                ) as response:
                    result: Dict[str, Any] = {
                        "status": response.status,
                        "headers": dict(response.headers),
                        "body": await response.text()
                    }
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExecutionError(f"HTTP request failed: {e}", cause=e) from e

        if response.status >= 400:
            raise ExecutionError(f"HTTP {response.status} from {payload.method} {payload.url}")
        return result
