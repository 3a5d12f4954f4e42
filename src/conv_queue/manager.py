"""Conversion queue manager.

Owns the FIFO of pending tasks and runs them one at a time against a
transcoding engine, relaying lifecycle events to a notification sink.

Threading model:
- ``enqueue()`` may be called from any thread. It only appends to the
  pending deque and schedules work; it never blocks and never raises.
- All job state transitions run on a single dispatcher thread (a one-worker
  ThreadPoolExecutor). Engine signals arrive on engine threads and are
  re-dispatched there, so no two transitions ever interleave.
- The queue advances only from terminal signals (engine error/end, or a
  job that fails before the engine is started). A job's start signal never
  advances the queue, so at most one encode runs at a time.

Manager states:
    idle      → resolving   (task enqueued while idle)
    resolving → encoding    (engine started)
    resolving → resolving   (job failed/skipped, next task picked up)
    encoding  → resolving   (terminal signal, next task picked up)
    *         → idle        (pending queue empty)
    *         → halted      (halt_on_failure and a setup failure)
"""

import logging
import threading
from collections import deque
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Optional, Union

from pydantic import ValidationError

from .bitrate import resolve_for_task
from .catalog import lookup_format
from .engine import EncodeRequest, EngineListener, EngineProgress, FfmpegEngine, TranscodingEngine
from .errors import (
    ConversionError,
    EngineError,
    InputNotFound,
    InvalidTask,
    MetadataExtractionFailure,
    UnexpectedResolutionError,
    UnknownFormat,
)
from .metadata import FfprobeMetadataExtractor, MetadataExtractor
from .models import (
    ConversionTask,
    ConvQueueConfig,
    JobState,
    ManagerState,
    MediaMetadata,
    ResolvedEncodeParameters,
)
from .naming import job_hash, output_file_name
from .notifications import CompletionInfo, NotificationSink, ProgressInfo, build_sink
from .paths import JobPaths, access_url, base_url as make_base_url, ensure_dir, resolve_job_paths
from .progress import estimate_progress

logger = logging.getLogger(__name__)

# Setup failures that stop the queue when halt_on_failure is set
HALTING_ERRORS = (InputNotFound, MetadataExtractionFailure, UnexpectedResolutionError)


@dataclass
class PendingTask:
    """A queue entry. ``task`` is None when the submission failed validation."""
    job_hash: str
    output_file: str
    payload: Dict[str, Any]
    task: Optional[ConversionTask] = None
    error: Optional[str] = None


@dataclass
class Job:
    """Runtime state of the task currently being processed."""
    pending: PendingTask
    state: JobState = JobState.RESOLVING
    paths: Optional[JobPaths] = None
    metadata: MediaMetadata = field(default_factory=MediaMetadata)
    params: Optional[ResolvedEncodeParameters] = None

    @property
    def hash(self) -> str:
        return self.pending.job_hash

    @property
    def output_file(self) -> str:
        return self.pending.output_file


class _JobListener(EngineListener):
    """Forwards engine signals for one job onto the dispatcher thread."""

    def __init__(self, manager: "QueueManager", job: Job):
        self.manager = manager
        self.job = job

    def on_start(self, command_line: str) -> None:
        self.manager._schedule(self.manager._on_engine_start, self.job, command_line)

    def on_progress(self, progress: EngineProgress) -> None:
        self.manager._schedule(self.manager._on_engine_progress, self.job, progress)

    def on_error(self, message: str) -> None:
        self.manager._schedule(self.manager._on_engine_error, self.job, message)

    def on_end(self) -> None:
        self.manager._schedule(self.manager._on_engine_end, self.job)


class QueueManager:
    """Sequences conversion tasks against a single transcoding slot.

    Example:
        >>> with QueueManager.from_config(resolve_config()) as manager:
        ...     manager.enqueue({"inputFile": "song.wav", "format": "mp3"})
        ...     manager.wait_until_idle()
    """

    def __init__(
        self,
        engine: TranscodingEngine,
        notifier: NotificationSink,
        extractor: MetadataExtractor,
        base_dir: Union[str, Path],
        halt_on_failure: bool = False,
        strict_formats: bool = False,
        progress_formula: str = "ratio",
        base_url: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the manager.

        Args:
            engine: Transcoding engine used for every job
            notifier: Receiver of lifecycle events
            extractor: Source of duration and tags
            base_dir: Working directory holding tmp/ and converted/
            halt_on_failure: Stop processing on missing input or setup failure
            strict_formats: Fail tasks whose format is not in the catalog
            progress_formula: "ratio" or "legacy" (see progress.py)
            base_url: Prefix for access URLs (None = discover host address)
            clock: Source of "now" for the dated output directory
        """
        self.engine = engine
        self.notifier = notifier
        self.extractor = extractor
        self.base_dir = Path(base_dir)
        self.halt_on_failure = halt_on_failure
        self.strict_formats = strict_formats
        self.progress_formula = progress_formula
        self.base_url = base_url or make_base_url()
        self._clock = clock

        self._pending: Deque[PendingTask] = deque()
        self._state = ManagerState.IDLE
        self._current: Optional[Job] = None
        self._cond = threading.Condition()
        self._dispatcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="conv-queue")

    @classmethod
    def from_config(
        cls,
        config: ConvQueueConfig,
        engine: Optional[TranscodingEngine] = None,
        notifier: Optional[NotificationSink] = None,
        extractor: Optional[MetadataExtractor] = None,
    ) -> "QueueManager":
        """Build a manager with ffmpeg/ffprobe collaborators from config."""
        engine_cfg = config.engine
        server_cfg = config.server
        return cls(
            engine=engine or FfmpegEngine(
                ffmpeg_path=engine_cfg.ffmpeg_path,
                hw_accel=engine_cfg.hw_accel,
                faststart=engine_cfg.faststart,
                ffmpeg_loglevel=engine_cfg.ffmpeg_loglevel,
                kill_grace_period_s=engine_cfg.kill_grace_period_s,
            ),
            notifier=notifier or build_sink(config.notifications),
            extractor=extractor or FfprobeMetadataExtractor(
                ffprobe_path=engine_cfg.ffprobe_path,
                timeout_s=engine_cfg.probe_timeout_s,
            ),
            base_dir=config.queue.base_dir,
            halt_on_failure=config.queue.halt_on_failure,
            strict_formats=config.queue.strict_formats,
            progress_formula=config.queue.progress_formula,
            base_url=make_base_url(server_cfg.public_url, server_cfg.host_address, server_cfg.port),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, task: Union[ConversionTask, Mapping]) -> str:
        """Append a task and start processing if the manager is idle.

        Malformed submissions are accepted here and fail when they reach
        the head of the queue.

        Returns:
            The job hash used in all notifications for this task
        """
        pending = self._prepare(task)
        self._schedule(self._notify, "queued", pending.output_file, pending.payload)

        with self._cond:
            self._pending.append(pending)
            kick = self._state == ManagerState.IDLE
            if kick:
                self._state = ManagerState.RESOLVING

        logger.info(f"Queued {pending.payload.get('input_file', '?')} as {pending.job_hash}")
        if kick:
            self._schedule(self._process_next)
        return pending.job_hash

    @property
    def state(self) -> ManagerState:
        with self._cond:
            return self._state

    def status(self) -> Dict[str, Any]:
        """Snapshot of the queue for status endpoints."""
        with self._cond:
            current = None
            if self._current is not None:
                current = {
                    "hash": self._current.hash,
                    "output_file": self._current.output_file,
                    "state": self._current.state.value,
                }
            return {
                "state": self._state.value,
                "pending": len(self._pending),
                "current": current,
            }

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is drained (or halted).

        Returns:
            False if the timeout expired first
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: self._state in (ManagerState.IDLE, ManagerState.HALTED),
                timeout=timeout,
            )

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until everything already scheduled on the dispatcher has run."""
        self._dispatcher.submit(lambda: None).result(timeout=timeout)

    def close(self, wait: bool = True) -> None:
        """Stop the dispatcher and release collaborators.

        With ``wait=False`` running ffmpeg processes are killed.
        """
        if not wait:
            self.engine.shutdown()
        self._dispatcher.shutdown(wait=wait)
        self.notifier.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # ------------------------------------------------------------------
    # Dispatcher plumbing
    # ------------------------------------------------------------------

    def _schedule(self, fn: Callable, *args) -> None:
        try:
            self._dispatcher.submit(self._guard, fn, *args)
        except RuntimeError:
            logger.warning(f"Queue manager closed, dropping {getattr(fn, '__name__', fn)}")

    @staticmethod
    def _guard(fn: Callable, *args) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception(f"Unhandled error in {getattr(fn, '__name__', fn)}")

    def _notify(self, event: str, *args) -> None:
        """Call the sink; delivery failures never reach the state machine."""
        try:
            getattr(self.notifier, event)(*args)
        except Exception as e:
            logger.warning(f"Notification '{event}' failed: {e}")

    @staticmethod
    def _prepare(task: Any) -> PendingTask:
        """Validate a submission without ever raising."""
        if isinstance(task, ConversionTask):
            return PendingTask(
                job_hash=job_hash(task.input_file),
                output_file=output_file_name(task.input_file, task.format, task.quality),
                payload=task.model_dump(mode="json", exclude_none=True),
                task=task,
            )

        if isinstance(task, Mapping):
            payload = dict(task)
            try:
                return QueueManager._prepare(ConversionTask.model_validate(payload))
            except ValidationError as e:
                input_file = payload.get("input_file", payload.get("inputFile", ""))
                return PendingTask(
                    job_hash=job_hash(str(input_file)),
                    output_file="",
                    payload=payload,
                    error=f"invalid task: {e.error_count()} validation error(s): "
                          + "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()),
                )

        return PendingTask(
            job_hash=job_hash(repr(task)),
            output_file="",
            payload={"value": repr(task)},
            error=f"invalid task: expected a mapping, got {type(task).__name__}",
        )

    # ------------------------------------------------------------------
    # Job lifecycle (dispatcher thread only)
    # ------------------------------------------------------------------

    def _process_next(self) -> None:
        with self._cond:
            if self._state == ManagerState.HALTED:
                return
            if not self._pending:
                self._state = ManagerState.IDLE
                self._current = None
                self._cond.notify_all()
                logger.debug("Queue drained, idle")
                return
            job = Job(pending=self._pending.popleft())
            self._state = ManagerState.RESOLVING
            self._current = job

        try:
            self._resolve_and_start(job)
        except ConversionError as e:
            self._fail(job, e)
        except Exception as e:
            logger.exception(f"Unexpected error preparing job {job.hash}")
            self._fail(job, UnexpectedResolutionError(f"{type(e).__name__}: {e}"))

    def _resolve_and_start(self, job: Job) -> None:
        pending = job.pending
        if pending.task is None:
            raise InvalidTask(pending.error or "invalid task")
        task = pending.task

        if self.strict_formats and lookup_format(task.format) is None:
            raise UnknownFormat(task.format)

        # Date is taken per job so long-running processes roll over at midnight
        job.paths = resolve_job_paths(self.base_dir, task.input_file, job.output_file, self._clock())

        if not job.paths.input_path.exists():
            raise InputNotFound(str(job.paths.input_path))

        ensure_dir(job.paths.output_dir)

        try:
            job.metadata = self.extractor.extract(job.paths.input_path)
        except MetadataExtractionFailure:
            raise
        except Exception as e:
            raise MetadataExtractionFailure(f"metadata extraction failed: {e}") from e

        job.params = resolve_for_task(task)
        request = EncodeRequest(
            input_path=job.paths.input_path,
            output_path=job.paths.output_path,
            params=job.params,
            size=task.size,
        )

        logger.info(
            f"Starting {job.hash}: {task.input_file} -> {job.paths.output_path} "
            f"(v={job.params.video_codec}@{job.params.video_bitrate}k "
            f"a={job.params.audio_codec}@{job.params.audio_bitrate}k "
            f"crf={job.params.quality_factor} preset={job.params.effort_preset})"
        )
        with self._cond:
            job.state = JobState.ENCODING
            self._state = ManagerState.ENCODING
        self.engine.start(request, _JobListener(self, job))

    def _fail(self, job: Job, error: ConversionError) -> None:
        """Terminal failure before or during encoding."""
        state = JobState.SKIPPED if isinstance(error, InputNotFound) else JobState.FAILED
        self._notify("failed", job.hash, str(error))

        if self.halt_on_failure and isinstance(error, HALTING_ERRORS):
            logger.error(f"Job {job.hash} {state.value}: {error}; halting queue")
            with self._cond:
                job.state = state
                self._state = ManagerState.HALTED
                self._current = None
                self._cond.notify_all()
            return

        logger.warning(f"Job {job.hash} {state.value} ({error.reason}): {error}")
        self._finish(job, state)

    def _finish(self, job: Job, state: JobState) -> None:
        """Record a terminal state and move on to the next task."""
        with self._cond:
            job.state = state
            if self._current is job:
                self._current = None
            if self._state != ManagerState.HALTED:
                self._state = ManagerState.RESOLVING
        self._schedule(self._process_next)

    def _is_current(self, job: Job, signal: str) -> bool:
        with self._cond:
            current = self._current is job and job.state == JobState.ENCODING
        if not current:
            logger.warning(f"Ignoring {signal} signal for job {job.hash} in state {job.state.value}")
        return current

    def _on_engine_start(self, job: Job, command_line: str) -> None:
        if not self._is_current(job, "start"):
            return
        logger.debug(f"Engine started {job.hash}: {command_line}")
        self._notify("started", job.hash)

    def _on_engine_progress(self, job: Job, progress: EngineProgress) -> None:
        if not self._is_current(job, "progress"):
            return
        percent = estimate_progress(
            job.metadata.duration, progress.timemark, progress.target_size, self.progress_formula
        )
        self._notify(
            "progress",
            job.hash,
            ProgressInfo(
                current_kbps=progress.current_kbps,
                target_size=progress.target_size,
                timemark=progress.timemark,
                percent=percent,
            ),
        )

    def _on_engine_error(self, job: Job, message: str) -> None:
        if not self._is_current(job, "error"):
            return
        error = EngineError(message)
        logger.error(f"Job {job.hash} failed: {error}")
        self._notify("failed", job.hash, str(error))
        self._finish(job, JobState.FAILED)

    def _on_engine_end(self, job: Job) -> None:
        if not self._is_current(job, "end"):
            return
        tags = job.metadata.tags
        url = access_url(self.base_url, job.paths.date_dir, job.output_file)
        logger.info(f"Job {job.hash} completed: {job.paths.output_path}")
        self._notify(
            "completed",
            job.hash,
            CompletionInfo(
                url=url,
                output_file=job.output_file,
                title=tags.title,
                album=tags.album,
                artist=tags.artist,
            ),
        )
        self._finish(job, JobState.COMPLETED)
