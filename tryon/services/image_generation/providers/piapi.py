"""
PiAPI provider (Kling AI try-on): stage both images on the ephemeral upload host,
create a remote task, poll its status until a terminal state or the poll budget runs out.
Try-on only; the task API has no text-to-clothing task.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from tryon.services.image_generation.base import (
    GenerationRequest,
    ImageGenerationError,
    ImageGenerationProvider,
    JobProgress,
    ProgressCallback,
    TaskState,
    TryOnRequest,
    sanitize_response_for_log,
)
from tryon.services.image_generation.codec import (
    ImageFetchError,
    ImagePayload,
    InvalidImageError,
    decode_data_uri,
    extension_for,
    find_first_image_reference,
)
from tryon.services.image_generation.failure_types import ErrorKind
from tryon.services.image_generation.fetcher import ImageFetcher
from tryon.services.image_generation.transport import RetryPolicy, call_with_policy
from tryon.utils.metrics import provider_requests_total

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"completed", "succeeded"})
FAILURE_STATUSES = frozenset({"failed", "error"})


class RemoteStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RemoteTask:
    """Remote job state; mutated only by status reads."""
    id: str
    status: RemoteStatus = RemoteStatus.PENDING
    output: Any = None
    error_detail: str | None = None

    def apply_status(self, body: dict[str, Any]) -> None:
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        raw_status = str(data.get("status") or body.get("status") or "").strip().lower()
        if raw_status in SUCCESS_STATUSES:
            self.status = RemoteStatus.SUCCEEDED
            output = data.get("output")
            if output is None:
                output = body.get("output")
            self.output = output if output is not None else body
        elif raw_status in FAILURE_STATUSES:
            self.status = RemoteStatus.FAILED
            error = data.get("error") or body.get("error") or {}
            self.error_detail = error.get("message") if isinstance(error, dict) else str(error)


def _first_present(body: dict[str, Any], *paths: tuple[str, ...]) -> Any:
    for path in paths:
        value: Any = body
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if value:
            return value
    return None


class PiAPIProvider(ImageGenerationProvider):
    """PiAPI asynchronous try-on: upload -> create task -> poll."""

    name = "piapi"

    def __init__(
        self,
        config: dict,
        client: httpx.AsyncClient,
        fetcher: ImageFetcher | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(config, client)
        self.api_key = (config.get("api_key") or "").strip()
        self.base_url = (config.get("base_url") or "https://api.piapi.ai").rstrip("/")
        self.upload_url = (config.get("upload_url") or "https://upload.theapi.app").rstrip("/")
        self.poll_interval = float(config.get("poll_interval", 2.5))
        self.poll_timeout = float(config.get("poll_timeout", 90.0))
        self.policy: RetryPolicy = config.get("retry_policy") or RetryPolicy(
            timeout_seconds=float(config.get("timeout", 30.0))
        )
        self.fetcher = fetcher or ImageFetcher(client)
        self._sleep = sleep
        self._clock = clock

    def is_available(self) -> bool:
        return bool(self.api_key)

    def supports(self, request: GenerationRequest) -> bool:
        return isinstance(request, TryOnRequest)

    @property
    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key}

    async def _post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        resp = await self.client.post(url, headers=self._headers, json=payload, timeout=self.policy.timeout_seconds)
        provider_requests_total.labels(provider=self.name, status=str(resp.status_code)).inc()
        resp.raise_for_status()
        return resp.json()

    async def _upload(self, image: ImagePayload, prefix: str) -> str:
        payload = {
            "file_name": f"{prefix}.{extension_for(image.mime_type)}",
            "file_data": image.to_data_uri(),
        }
        try:
            body = await call_with_policy(
                lambda: self._post_json(f"{self.upload_url}/api/ephemeral_resource", payload),
                self.policy,
                label=f"{self.name}_upload",
            )
        except ImageGenerationError as e:
            raise ImageGenerationError(
                f"Upload of {prefix} image failed: {e}", kind=ErrorKind.TERMINAL, detail=e.detail
            ) from e
        url = _first_present(body, ("data", "url"), ("data", "resource"), ("url",))
        if not url:
            raise ImageGenerationError(
                "Upload did not return a URL",
                kind=ErrorKind.TERMINAL,
                detail={"response": sanitize_response_for_log(body)},
            )
        return str(url)

    async def _create_task(self, person_url: str, clothing_url: str) -> RemoteTask:
        payload = {
            "model": "kling",
            "task_type": "ai_try_on",
            "input": {
                "model_input": person_url,
                "dress_input": clothing_url,
                "batch_size": 1,
            },
        }
        try:
            body = await call_with_policy(
                lambda: self._post_json(f"{self.base_url}/api/v1/task", payload),
                self.policy,
                label=f"{self.name}_create_task",
            )
        except ImageGenerationError as e:
            raise ImageGenerationError(
                f"Task creation failed: {e}", kind=ErrorKind.TERMINAL, detail=e.detail
            ) from e
        task_id = _first_present(body, ("data", "task_id"), ("data", "taskId"), ("task_id",))
        if not task_id:
            raise ImageGenerationError(
                "Task creation did not return a task id",
                kind=ErrorKind.TERMINAL,
                detail={"response": sanitize_response_for_log(body)},
            )
        return RemoteTask(id=str(task_id))

    async def _read_status(self, task: RemoteTask, timeout: float) -> None:
        """One poll. Non-2xx, transport errors and bad bodies leave the task unchanged."""
        try:
            resp = await self.client.get(
                f"{self.base_url}/api/v1/task/{task.id}",
                headers=self._headers,
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("piapi_poll_error", extra={"task_id": task.id, "error": f"{type(e).__name__}: {e}"})
            return
        if not resp.is_success:
            logger.warning("piapi_poll_non_2xx", extra={"task_id": task.id, "status_code": resp.status_code})
            return
        try:
            body = resp.json()
        except ValueError:
            logger.warning("piapi_poll_bad_body", extra={"task_id": task.id})
            return
        if isinstance(body, dict):
            task.apply_status(body)

    async def _resolve_output(self, task: RemoteTask) -> ImagePayload:
        reference = find_first_image_reference(task.output)
        if not reference:
            raise ImageGenerationError(
                "Task completed but no image URL found",
                kind=ErrorKind.TERMINAL,
                detail={"task_id": task.id, "output": sanitize_response_for_log(task.output)},
                user_message="no_image",
            )
        if reference.startswith("data:"):
            try:
                mime_type, data = decode_data_uri(reference)
            except InvalidImageError as e:
                raise ImageGenerationError(str(e), kind=ErrorKind.TERMINAL, detail={"task_id": task.id}) from e
            return ImagePayload.from_bytes(data, mime_type)
        try:
            return await self.fetcher.fetch(reference)
        except ImageFetchError as e:
            raise ImageGenerationError(
                f"Result image could not be fetched: {e}",
                kind=ErrorKind.TERMINAL,
                detail={"task_id": task.id},
            ) from e

    async def _generate(
        self,
        request: GenerationRequest,
        on_progress: ProgressCallback | None = None,
    ) -> ImagePayload:
        start = self._clock()

        def report(state: TaskState, task_id: str | None = None) -> None:
            if on_progress:
                on_progress(JobProgress(state=state, elapsed_seconds=round(self._clock() - start, 2), task_id=task_id))

        report(TaskState.UPLOADING)
        person_url = await self._upload(request.person, "person")
        clothing_url = await self._upload(request.clothing, "clothes")

        task = await self._create_task(person_url, clothing_url)
        report(TaskState.TASK_CREATED, task.id)
        logger.info("piapi_task_created", extra={"provider": self.name, "task_id": task.id})
        poll_start = self._clock()

        while self._clock() - poll_start < self.poll_timeout:
            await self._sleep(self.poll_interval)
            remaining = self.poll_timeout - (self._clock() - poll_start)
            if remaining <= 0:
                break
            # A status read never outlives the poll budget
            await self._read_status(task, min(self.policy.timeout_seconds, remaining))
            if task.status == RemoteStatus.SUCCEEDED:
                report(TaskState.SUCCEEDED, task.id)
                logger.info(
                    "piapi_task_succeeded",
                    extra={"task_id": task.id, "elapsed_seconds": round(self._clock() - start, 2)},
                )
                return await self._resolve_output(task)
            if task.status == RemoteStatus.FAILED:
                report(TaskState.FAILED, task.id)
                raise ImageGenerationError(
                    f"Task failed: {task.error_detail or 'unknown error'}",
                    kind=ErrorKind.TERMINAL,
                    detail={"task_id": task.id, "provider_error": task.error_detail},
                )
            report(TaskState.POLLING, task.id)

        report(TaskState.POLL_TIMED_OUT, task.id)
        raise ImageGenerationError(
            f"Task {task.id} did not finish within {self.poll_timeout}s",
            kind=ErrorKind.TIMEOUT,
            detail={"task_id": task.id},
        )
