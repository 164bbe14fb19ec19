"""Use-case service wiring item screenshots to the task queue."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from content_tasks.taskqueue import HandlerMeta, TaskQueue, TaskQueueError
from content_tasks.taskqueue.models import TASK_NOT_RETRYABLE, TASK_QUEUE_FULL

logger = logging.getLogger(__name__)

SCREENSHOT_TASK_TYPE = "screenshot"
SCREENSHOT_MAX_ATTEMPTS = 2


class ScreenshotService(Protocol):
    """Protocol implemented by the screenshot capture backend."""

    def run_screenshot_task(self, *, id: Any) -> Any:  # noqa: A002
        """Capture a screenshot for the item and return its summary."""


@dataclass(slots=True)
class ServiceResponse:
    """HTTP-shaped outcome handed back to the routing layer."""

    status: int
    body: dict[str, Any]


def _identity(value: Any) -> Any:
    return value


class ItemsTaskService:
    """Queues item screenshots and exposes task status and retry."""

    def __init__(
        self,
        *,
        queue: TaskQueue | None,
        screenshot_service: ScreenshotService,
        parse_id: Callable[[Any], Any] | None = None,
    ) -> None:
        self.queue = queue
        self.screenshot_service = screenshot_service
        self.parse_id = parse_id or _identity

    def register_screenshot_handler(self) -> None:
        if self.queue is None or self.queue.has_handler(SCREENSHOT_TASK_TYPE):
            return
        self.queue.register_handler(SCREENSHOT_TASK_TYPE, self._run_screenshot)

    def _run_screenshot(self, payload: Any, meta: HandlerMeta) -> Any:
        item_id = self.parse_id(payload.get("id") if isinstance(payload, dict) else None)
        logger.info(
            "Capturing screenshot for item %s (task %s attempt %d)",
            item_id,
            meta.task_id,
            meta.attempt,
        )
        return self.screenshot_service.run_screenshot_task(id=item_id)

    def create_screenshot_task(self, *, id: Any) -> ServiceResponse:  # noqa: A002
        if self.queue is None:
            result = self.screenshot_service.run_screenshot_task(id=id)
            return ServiceResponse(status=200, body=result)

        try:
            task = self.queue.enqueue_task(
                SCREENSHOT_TASK_TYPE,
                {"id": id},
                max_attempts=SCREENSHOT_MAX_ATTEMPTS,
            )
        except TaskQueueError as error:
            if error.code == TASK_QUEUE_FULL:
                return ServiceResponse(status=error.http_status, body={"error": error.code})
            raise
        return ServiceResponse(status=202, body={"ok": True, "task": task.to_dict()})

    def get_task_by_id(self, *, task_id: Any) -> ServiceResponse:
        if self.queue is None:
            return _not_found()
        task = self.queue.get_task(self.parse_id(task_id))
        if task is None:
            return _not_found()
        return ServiceResponse(status=200, body={"task": task.to_dict()})

    def retry_task_by_id(self, *, task_id: Any) -> ServiceResponse:
        if self.queue is None:
            return _not_found()
        try:
            task = self.queue.retry_task(self.parse_id(task_id))
        except TaskQueueError as error:
            if error.code in {TASK_NOT_RETRYABLE, TASK_QUEUE_FULL}:
                return ServiceResponse(status=error.http_status, body={"error": error.code})
            raise
        if task is None:
            return _not_found()
        return ServiceResponse(status=200, body={"ok": True, "task": task.to_dict()})


def _not_found() -> ServiceResponse:
    return ServiceResponse(status=404, body={"error": "not_found"})
