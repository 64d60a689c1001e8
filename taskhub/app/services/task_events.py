"""
services/task_events.py — Status-change notifications for the background queue.

Contract:
  - Task mutations commit first; the route publishes afterwards.
  - Publishing is best-effort. Delivery is retried with exponential backoff
    and every failure is logged here, but nothing is ever raised back to
    the request that triggered it. A task update succeeds even when its
    notification is lost.
  - Off-thread delivery has a bounded backlog. Past the bound, events are
    dropped and logged at ERROR.

Queue backends:
  - InMemoryTaskQueue: keeps jobs in a list. Development and tests.
  - RedisTaskQueue: RPUSHes a JSON job document onto a Redis list that
    the worker process consumes.

Selected by TASK_QUEUE_BACKEND through build_task_queue().
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

logger = logging.getLogger(__name__)

STATUS_UPDATE_JOB = "task-status-update"


@dataclass(frozen=True)
class TaskStatusEvent:
    task_id: int
    status: str

    def to_payload(self) -> dict:
        return {"taskId": self.task_id, "status": self.status}


class TaskQueue(ABC):

    @abstractmethod
    def enqueue(self, job_name: str, payload: dict) -> None:
        """Hands one job to the queue. Raises on failure."""


class InMemoryTaskQueue(TaskQueue):

    def __init__(self) -> None:
        self.jobs: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def enqueue(self, job_name: str, payload: dict) -> None:
        with self._lock:
            self.jobs.append((job_name, dict(payload)))

    def clear(self) -> None:
        with self._lock:
            self.jobs.clear()


class RedisTaskQueue(TaskQueue):

    def __init__(self, client, queue_name: str) -> None:
        self.client = client
        self.queue_name = queue_name

    def enqueue(self, job_name: str, payload: dict) -> None:
        job = {
            "name": job_name,
            "data": payload,
            "enqueued_at": datetime.now(timezone.utc).isoformat(),
        }
        self.client.rpush(self.queue_name, json.dumps(job))


class TaskEventPublisher:
    """
    Delivers TaskStatusEvents to a TaskQueue with retries.

    With an executor, delivery runs off the request thread and publish()
    returns the Future. At most `max_pending` deliveries may be queued or
    running at once; further events are dropped and logged at ERROR, so a
    queue outage cannot grow the backlog without bound. Without an
    executor, delivery runs inline and publish() returns whether it
    succeeded.

    Once shutdown() is called, or the interpreter is exiting, new events
    are dropped and in-flight deliveries give up instead of retrying.
    """

    def __init__(
            self,
            queue: TaskQueue,
            max_attempts: int = 3,
            backoff_ms: int = 500,
            executor: Executor | None = None,
            max_pending: int = 100,
            sleep: Callable[[float], object] | None = None,
    ) -> None:
        self.queue = queue
        self.max_attempts = max(1, max_attempts)
        self.backoff_ms = max(0, backoff_ms)
        self.executor = executor
        self.max_pending = max(1, max_pending)
        self._slots = threading.BoundedSemaphore(self.max_pending)
        self._stopping = threading.Event()
        # Waiting on the stop event lets shutdown() cut a backoff short.
        self._sleep = sleep or self._stopping.wait

    def publish(self, event: TaskStatusEvent) -> bool | Future:
        if self._stop_requested():
            logger.error(
                "Publisher is shut down; dropping status update for task %s",
                event.task_id,
            )
            return False

        if self.executor is None:
            return self._deliver(event)

        if not self._slots.acquire(blocking=False):
            logger.error(
                "%d status updates already pending; dropping status update for task %s",
                self.max_pending,
                event.task_id,
            )
            return False
        try:
            future = self.executor.submit(self._deliver, event)
        except RuntimeError:
            # The executor was shut down between the check above and submit().
            self._slots.release()
            logger.error(
                "Publisher is shut down; dropping status update for task %s",
                event.task_id,
            )
            return False
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def publish_all(self, events: list[TaskStatusEvent]) -> None:
        for event in events:
            self.publish(event)

    def shutdown(self, wait: bool = True) -> None:
        """Stops accepting events and cancels deliveries not yet started."""
        self._stopping.set()
        if self.executor is not None:
            self.executor.shutdown(wait=wait, cancel_futures=True)

    def _stop_requested(self) -> bool:
        return self._stopping.is_set() or not threading.main_thread().is_alive()

    def _deliver(self, event: TaskStatusEvent) -> bool:
        for attempt in range(self.max_attempts):
            try:
                self.queue.enqueue(STATUS_UPDATE_JOB, event.to_payload())
                return True
            except Exception as exc:
                if attempt + 1 >= self.max_attempts or self._stop_requested():
                    logger.error(
                        "Failed to enqueue status update for task %s after %d attempts: %s",
                        event.task_id,
                        attempt + 1,
                        exc,
                    )
                    return False
                delay_ms = self.backoff_ms * (2 ** attempt)
                logger.warning(
                    "Enqueue attempt %d for task %s failed (%s); retrying in %d ms",
                    attempt + 1,
                    event.task_id,
                    exc,
                    delay_ms,
                )
                if delay_ms:
                    self._sleep(delay_ms / 1000)
        return False


def build_task_queue(config) -> TaskQueue:
    """Creates the queue named by config["TASK_QUEUE_BACKEND"]."""
    backend = (config.get("TASK_QUEUE_BACKEND") or "memory").lower()

    if backend == "memory":
        return InMemoryTaskQueue()

    if backend == "redis":
        from redis import Redis

        client = Redis.from_url(config["REDIS_URL"])
        return RedisTaskQueue(client, config.get("TASK_QUEUE_NAME", "task-processing"))

    raise ValueError(f"Unknown TASK_QUEUE_BACKEND: {backend!r}")
