"""Lifecycle event delivery.

This module defines the notification contract the queue manager calls and
the transports behind it. Delivery is fire-and-forget from the manager's
point of view: implementations must not block on the network and must not
let delivery failures escape into the queue.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from .errors import NotificationError
from .models import NotificationConfig

logger = logging.getLogger(__name__)


class ProgressInfo(BaseModel):
    """Payload of a progress event."""

    current_kbps: Optional[float] = Field(default=None, description="Current encode bitrate")
    target_size: Optional[float] = Field(default=None, description="Output size so far (kB)")
    timemark: Optional[str] = Field(default=None, description="Elapsed marker HH:MM:SS.ff")
    percent: int = Field(default=0, description="Completion percentage")


class CompletionInfo(BaseModel):
    """Payload of a completed event."""

    url: str = Field(..., description="Access URL of the converted file")
    output_file: str = Field(..., description="Output file name")
    title: str = ""
    album: str = ""
    artist: str = ""


class NotificationSink(ABC):
    """Receiver of per-job lifecycle events.

    Implementations must:
    - Return quickly (queue manager calls these on its dispatcher thread)
    - Never raise for delivery problems; log them instead
    """

    @abstractmethod
    def queued(self, output_file: str, task: Dict[str, Any]) -> None:
        """Task accepted into the queue.

        Args:
            output_file: Resolved output file name
            task: The task as submitted
        """
        pass

    @abstractmethod
    def started(self, job_hash: str) -> None:
        """Engine signalled that encoding began."""
        pass

    @abstractmethod
    def progress(self, job_hash: str, info: ProgressInfo) -> None:
        pass

    @abstractmethod
    def failed(self, job_hash: str, error: str) -> None:
        """Job reached a failure terminal state."""
        pass

    @abstractmethod
    def completed(self, job_hash: str, info: CompletionInfo) -> None:
        pass

    def close(self) -> None:
        """Flush pending deliveries and release resources."""


class LoggingNotificationSink(NotificationSink):
    """Writes every event to the log. Useful standalone and for debugging."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def queued(self, output_file, task):
        logger.log(self.level, f"queued {task.get('input_file', '?')} -> {output_file}")

    def started(self, job_hash):
        logger.log(self.level, f"started {job_hash}")

    def progress(self, job_hash, info):
        logger.log(
            self.level,
            f"progress {job_hash}: {info.percent}% @ {info.timemark} ({info.current_kbps} kbps)",
        )

    def failed(self, job_hash, error):
        logger.log(max(self.level, logging.WARNING), f"failed {job_hash}: {error}")

    def completed(self, job_hash, info):
        logger.log(self.level, f"completed {job_hash}: {info.url}")


class HttpNotificationSink(NotificationSink):
    """POSTs JSON events to a remote listener.

    Endpoints (relative to ``api_url``)::

        POST /queue     {"output_file": ..., "task": {...}}
        POST /start     {"hash": ...}
        POST /progress  {"hash": ..., "info": {...}}
        POST /error     {"hash": ..., "error": ...}
        POST /complete  {"hash": ..., "info": {...}}

    Requests run on a single background thread so events arrive in order
    and callers never wait on the network. Failed deliveries are logged and
    dropped; there are no retries.
    """

    def __init__(
        self,
        api_url: str,
        timeout_s: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._client = httpx.Client(base_url=self.api_url, timeout=timeout_s, transport=transport)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")

    def queued(self, output_file, task):
        self._post("/queue", {"output_file": output_file, "task": task})

    def started(self, job_hash):
        self._post("/start", {"hash": job_hash})

    def progress(self, job_hash, info):
        self._post("/progress", {"hash": job_hash, "info": info.model_dump()})

    def failed(self, job_hash, error):
        self._post("/error", {"hash": job_hash, "error": error})

    def completed(self, job_hash, info):
        self._post("/complete", {"hash": job_hash, "info": info.model_dump()})

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._client.close()

    def _post(self, path: str, payload: Dict[str, Any]) -> None:
        try:
            self._executor.submit(self._deliver, path, payload)
        except RuntimeError:
            # Executor already shut down
            logger.warning(f"Notification sink closed, dropping {path} event")

    def _deliver(self, path: str, payload: Dict[str, Any]) -> None:
        try:
            self.send(path, payload)
        except NotificationError as e:
            logger.warning(str(e))

    def send(self, path: str, payload: Dict[str, Any]) -> None:
        """Synchronously deliver one event.

        Raises:
            NotificationError: On transport errors or non-2xx responses
        """
        try:
            response = self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Failed to deliver {path} event to {self.api_url}: {e}") from e


class CompositeNotificationSink(NotificationSink):
    """Fans each event out to several sinks, isolating their failures."""

    def __init__(self, sinks: List[NotificationSink]):
        self.sinks = list(sinks)

    def _each(self, method: str, *args) -> None:
        for sink in self.sinks:
            try:
                getattr(sink, method)(*args)
            except Exception as e:
                logger.warning(f"{type(sink).__name__}.{method} failed: {e}")

    def queued(self, output_file, task):
        self._each("queued", output_file, task)

    def started(self, job_hash):
        self._each("started", job_hash)

    def progress(self, job_hash, info):
        self._each("progress", job_hash, info)

    def failed(self, job_hash, error):
        self._each("failed", job_hash, error)

    def completed(self, job_hash, info):
        self._each("completed", job_hash, info)

    def close(self) -> None:
        self._each("close")


def build_sink(config: NotificationConfig) -> NotificationSink:
    """Create the sink described by the notifications config section."""
    sinks: List[NotificationSink] = []
    if config.log_events:
        sinks.append(LoggingNotificationSink())
    if config.api_url:
        sinks.append(HttpNotificationSink(config.api_url, timeout_s=config.timeout_s))
    if len(sinks) == 1:
        return sinks[0]
    return CompositeNotificationSink(sinks)
