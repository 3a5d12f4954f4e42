from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from conv_queue.engine import EncodeRequest, EngineListener, EngineProgress, TranscodingEngine
from conv_queue.errors import MetadataExtractionFailure
from conv_queue.manager import QueueManager
from conv_queue.metadata import MetadataExtractor
from conv_queue.models import MediaMetadata, MediaTags
from conv_queue.notifications import NotificationSink

FIXED_NOW = datetime(2024, 3, 7, 15, 30)


class FakeEngine(TranscodingEngine):
    """Records start requests; tests fire the signals by hand."""

    def __init__(self, raise_on_start: Optional[Exception] = None):
        self.started: List[Tuple[EncodeRequest, EngineListener]] = []
        self.raise_on_start = raise_on_start

    def start(self, request, listener):
        if self.raise_on_start is not None:
            raise self.raise_on_start
        self.started.append((request, listener))

    @property
    def last_listener(self) -> EngineListener:
        return self.started[-1][1]

    def input_names(self) -> List[str]:
        return [request.input_path.name for request, _ in self.started]


class FakeExtractor(MetadataExtractor):
    def __init__(self, duration=120.0, tags=None, fail_for=()):
        self.duration = duration
        self.tags = tags or MediaTags(title="Song", album="Album", artist="Artist")
        self.fail_for = set(fail_for)

    def extract(self, path: Path) -> MediaMetadata:
        if path.name in self.fail_for:
            raise MetadataExtractionFailure(f"cannot probe {path.name}")
        return MediaMetadata(duration=self.duration, tags=self.tags)


class RecordingSink(NotificationSink):
    """Keeps every event as an (event, args...) tuple."""

    def __init__(self):
        self.events: List[tuple] = []
        self.closed = False

    def queued(self, output_file, task):
        self.events.append(("queued", output_file, task))

    def started(self, job_hash):
        self.events.append(("started", job_hash))

    def progress(self, job_hash, info):
        self.events.append(("progress", job_hash, info))

    def failed(self, job_hash, error):
        self.events.append(("failed", job_hash, error))

    def completed(self, job_hash, info):
        self.events.append(("completed", job_hash, info))

    def close(self):
        self.closed = True

    def names(self) -> List[str]:
        return [event[0] for event in self.events]

    def of(self, name: str) -> List[tuple]:
        return [event for event in self.events if event[0] == name]


class BrokenSink(RecordingSink):
    """Records, then raises like a transport that lost its connection."""

    def _boom(self):
        raise ConnectionError("listener unreachable")

    def queued(self, output_file, task):
        super().queued(output_file, task)
        self._boom()

    def started(self, job_hash):
        super().started(job_hash)
        self._boom()

    def failed(self, job_hash, error):
        super().failed(job_hash, error)
        self._boom()

    def completed(self, job_hash, info):
        super().completed(job_hash, info)
        self._boom()


def settle(manager: QueueManager, rounds: int = 10) -> None:
    """Let chains of dispatcher work (signal -> finish -> next) run out."""
    for _ in range(rounds):
        manager.flush(timeout=5)


@pytest.fixture
def base_dir(tmp_path):
    (tmp_path / "tmp").mkdir()
    return tmp_path


@pytest.fixture
def make_input(base_dir):
    def _make(name: str, content: bytes = b"fake media") -> Path:
        path = base_dir / "tmp" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path
    return _make


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def make_manager(base_dir, engine, sink, extractor):
    managers = []

    def _make(**kwargs) -> QueueManager:
        options = dict(
            engine=engine,
            notifier=sink,
            extractor=extractor,
            base_dir=base_dir,
            base_url="http://media.test:8080",
            clock=lambda: FIXED_NOW,
        )
        options.update(kwargs)
        manager = QueueManager(**options)
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.close()


@pytest.fixture
def manager(make_manager):
    return make_manager()


def progress_report(timemark="00:01:00.00", kbps=950.5, size_kb=2048.0) -> EngineProgress:
    return EngineProgress(timemark=timemark, current_kbps=kbps, target_size=size_kb)
