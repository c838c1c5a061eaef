"""
Logging setup tests

Tests cover:
- Event field parsing of "Component | event=name | key=value" messages
- JSON formatting with lifted event fields
- Per-event rate limiting and the suppressed count
- History archive naming, gzip rotation and retention
"""

import gzip
import json
import logging
from unittest.mock import patch

import pytest

from drone_relay.utils.logging_setup import (
    EventJsonFormatter, EventRateLimitFilter, HistoryRotatingFileHandler,
    apply_rate_limit_filters, parse_event
)


def make_record(msg, *args, level=logging.INFO, name="drone_relay.services.transcoder"):
    return logging.LogRecord(name, level, __file__, 1, msg, args, None)


class TestEventFormatting:
    """Tests for event parsing and the JSON formatter"""

    def test_parse_event(self):
        fields = parse_event("Viewers | event=connected | viewer=3 | total=1")

        assert fields == {"component": "Viewers", "event": "connected", "viewer": "3", "total": "1"}

    @pytest.mark.parametrize("message", ["plain text", "Viewers | connected", ""])
    def test_parse_event_ignores_other_messages(self, message):
        assert parse_event(message) == {}

    def test_json_lifts_event_fields(self):
        record = make_record("Transcoder | event=exited | code=%s", 1)

        payload = json.loads(EventJsonFormatter().format(record))

        assert payload["component"] == "Transcoder"
        assert payload["event"] == "exited"
        assert payload["code"] == "1"
        assert payload["level"] == "INFO"
        assert "message" not in payload

    def test_json_fields_do_not_overwrite_record_attributes(self):
        record = make_record("Api | event=request | level=bogus")

        payload = json.loads(EventJsonFormatter().format(record))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "drone_relay.services.transcoder"

    def test_json_keeps_plain_message(self):
        payload = json.loads(EventJsonFormatter().format(make_record("ffmpeg said %s", "hello")))

        assert payload["message"] == "ffmpeg said hello"


class TestEventRateLimitFilter:
    """Tests for per-event suppression"""

    def test_repeats_of_one_event_are_suppressed(self):
        limiter = EventRateLimitFilter(60)
        with patch("drone_relay.utils.logging_setup.time") as clock:
            clock.monotonic.side_effect = [0.0, 1.0, 2.0, 3.0, 61.0]

            results = [limiter.filter(make_record("Transcoder | event=stderr | line=%s", n)) for n in range(3)]
            other = limiter.filter(make_record("Transcoder | event=exited | code=%s", 0))
            after_interval = make_record("Transcoder | event=stderr | line=%s", 9)
            passed = limiter.filter(after_interval)

        assert results == [True, False, False]
        assert other is True
        assert passed is True
        assert after_interval.getMessage() == "Transcoder | event=stderr | line=9 | suppressed=2"

    def test_warnings_always_pass(self):
        limiter = EventRateLimitFilter(60)

        results = [
            limiter.filter(make_record("Viewers | event=send_failed | viewer=%s", n, level=logging.WARNING))
            for n in range(3)
        ]

        assert results == [True, True, True]

    def test_apply_rate_limit_filters(self):
        target = logging.getLogger("drone_relay.tests.rate_limited")
        skipped = logging.getLogger("drone_relay.tests.not_limited")
        try:
            rate_limits = {target.name: "5", skipped.name: 0, "drone_relay.tests.bad": "soon"}
            apply_rate_limit_filters(rate_limits)
            apply_rate_limit_filters(rate_limits)

            limiters = [f for f in target.filters if isinstance(f, EventRateLimitFilter)]
            assert len(limiters) == 1
            assert limiters[0].interval == 5.0
            assert skipped.filters == []
        finally:
            target.filters.clear()


class TestHistoryRotatingFileHandler:
    """Tests for the gzip history archive"""

    @pytest.fixture
    def handler(self, tmp_path):
        handler = HistoryRotatingFileHandler(tmp_path / "drone_relay.log", retention_days=2)
        yield handler
        handler.close()

    def test_archive_name(self, handler, tmp_path):
        name = handler.namer(str(tmp_path / "drone_relay.log") + ".2026-10-15")

        assert name == str(tmp_path / "history" / "drone_relay_2026-10-15.log.gz")

    def test_archive_compresses_and_removes_source(self, handler, tmp_path):
        source = tmp_path / "drone_relay.log.2026-10-15"
        source.write_text("Transcoder | event=started\n", encoding="utf-8")
        dest = tmp_path / "history" / "drone_relay_2026-10-15.log.gz"

        handler.rotator(str(source), str(dest))

        assert not source.exists()
        with gzip.open(dest, "rt", encoding="utf-8") as archived:
            assert archived.read() == "Transcoder | event=started\n"

    def test_retention_keeps_newest_archives_of_this_file(self, handler, tmp_path):
        history = tmp_path / "history"
        for day in ("12", "13", "14", "15"):
            (history / f"drone_relay_2026-10-{day}.log.gz").write_bytes(b"")
        (history / "drone_relay_error_2026-10-01.log.gz").write_bytes(b"")

        doomed = [path.rsplit("/", 1)[-1] for path in handler.getFilesToDelete()]

        assert doomed == ["drone_relay_2026-10-12.log.gz", "drone_relay_2026-10-13.log.gz"]
