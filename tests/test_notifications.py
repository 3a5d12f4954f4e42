"""Tests for notification sinks."""

import json
import logging

import httpx
import pytest

from conftest import BrokenSink, RecordingSink
from conv_queue.errors import NotificationError
from conv_queue.models import NotificationConfig
from conv_queue.notifications import (
    CompletionInfo,
    CompositeNotificationSink,
    HttpNotificationSink,
    LoggingNotificationSink,
    ProgressInfo,
    build_sink,
)


def recording_transport(requests, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.url.path, json.loads(request.content)))
        return httpx.Response(status_code)
    return httpx.MockTransport(handler)


class TestHttpNotificationSink:
    def test_event_endpoints_and_payloads(self):
        requests = []
        sink = HttpNotificationSink("http://listener.test/api/", transport=recording_transport(requests))

        sink.queued("abc.mp3", {"input_file": "a.wav", "format": "mp3"})
        sink.started("abc")
        sink.progress("abc", ProgressInfo(current_kbps=320.0, target_size=64.0, timemark="00:00:10.00", percent=8))
        sink.failed("abc", "ffmpeg exited with code 1")
        sink.completed("abc", CompletionInfo(url="http://h/converted/2024-3-7/abc.mp3", output_file="abc.mp3"))
        sink.close()

        assert [path for path, _ in requests] == [
            "/api/queue", "/api/start", "/api/progress", "/api/error", "/api/complete",
        ]
        assert requests[0][1] == {"output_file": "abc.mp3", "task": {"input_file": "a.wav", "format": "mp3"}}
        assert requests[1][1] == {"hash": "abc"}
        assert requests[2][1]["info"]["percent"] == 8
        assert requests[3][1] == {"hash": "abc", "error": "ffmpeg exited with code 1"}
        assert requests[4][1]["info"]["url"] == "http://h/converted/2024-3-7/abc.mp3"
        assert requests[4][1]["info"]["title"] == ""

    def test_send_raises_on_server_error(self):
        sink = HttpNotificationSink("http://listener.test", transport=recording_transport([], 500))
        with pytest.raises(NotificationError):
            sink.send("/start", {"hash": "abc"})
        sink.close()

    def test_server_error_is_logged_not_raised(self, caplog):
        sink = HttpNotificationSink("http://listener.test", transport=recording_transport([], 503))
        with caplog.at_level(logging.WARNING, logger="conv_queue.notifications"):
            sink.started("abc")
            sink.close()
        assert "Failed to deliver /start" in caplog.text

    def test_connection_error_is_logged_not_raised(self, caplog):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        sink = HttpNotificationSink("http://listener.test", transport=httpx.MockTransport(handler))
        with caplog.at_level(logging.WARNING, logger="conv_queue.notifications"):
            sink.failed("abc", "boom")
            sink.close()
        assert "connection refused" in caplog.text

    def test_events_after_close_are_dropped(self, caplog):
        requests = []
        sink = HttpNotificationSink("http://listener.test", transport=recording_transport(requests))
        sink.close()
        with caplog.at_level(logging.WARNING, logger="conv_queue.notifications"):
            sink.started("abc")
        assert requests == []
        assert "dropping /start" in caplog.text


class TestCompositeNotificationSink:
    def test_fans_out_to_every_sink(self):
        first, second = RecordingSink(), RecordingSink()
        composite = CompositeNotificationSink([first, second])
        composite.started("abc")
        composite.failed("abc", "boom")
        assert first.names() == second.names() == ["started", "failed"]

    def test_isolates_failing_sink(self):
        broken, healthy = BrokenSink(), RecordingSink()
        composite = CompositeNotificationSink([broken, healthy])
        composite.started("abc")
        assert healthy.names() == ["started"]

    def test_close_closes_all(self):
        first, second = RecordingSink(), RecordingSink()
        CompositeNotificationSink([first, second]).close()
        assert first.closed and second.closed


class TestLoggingNotificationSink:
    def test_failed_logs_at_warning(self, caplog):
        sink = LoggingNotificationSink(level=logging.DEBUG)
        with caplog.at_level(logging.DEBUG, logger="conv_queue.notifications"):
            sink.failed("abc", "input not found")
        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "input not found" in record.getMessage()


class TestBuildSink:
    def test_log_only(self):
        assert isinstance(build_sink(NotificationConfig()), LoggingNotificationSink)

    def test_http_only(self):
        sink = build_sink(NotificationConfig(api_url="http://listener.test", log_events=False))
        assert isinstance(sink, HttpNotificationSink)
        sink.close()

    def test_both(self):
        sink = build_sink(NotificationConfig(api_url="http://listener.test"))
        assert isinstance(sink, CompositeNotificationSink)
        assert len(sink.sinks) == 2
        sink.close()
