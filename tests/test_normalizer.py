"""Tests for the event normalizer fallback chain."""

import json

import pytest

from tailship.config import LogFormat
from tailship.models import Event, EventKind, LogLine
from tailship.normalizer import (
    Normalizer,
    parse_access_log,
    parse_custom_format,
    parse_json_object,
)

HOST = "testhost"
SRC = "/var/log/nginx/access.log"


def _line(text: str, source: str = SRC) -> LogLine:
    return LogLine(source=source, text=text)


class TestCustomFormat:
    def test_simple_pattern_with_hostname_placeholder(self):
        fmt = LogFormat(pattern=r"(\w+): (.+)", fields={"method": "1", "path": "2", "host": "hostname"})
        fields = parse_custom_format(_line("INFO: started"), HOST, fmt)
        assert fields == {"method": "INFO", "path": "started", "host": HOST}

    def test_nginx_upstream_time(self):
        fmt = LogFormat(
            name="nginx-upstream",
            pattern=r'^(\S+) - - \[([^\]]+)\] "(\S+) ([^"]*) HTTP/[^"]*" (\d+) (\d+) "([^"]*)" "([^"]*)" ([0-9.]+) ([0-9.]+)',
            fields={
                "src": "1", "method": "3", "path": "4", "status": "5", "bytes": "6",
                "user_agent": "8", "rt": "9", "upstream_time": "10",
            },
        )
        line = ('203.0.113.42 - - [22/Sep/2025:17:04:36 +0000] "GET /api/data HTTP/1.1" '
                '200 5432 "https://example.com/" "Mozilla/5.0" 0.234 0.189')
        fields = parse_custom_format(_line(line), HOST, fmt)
        assert fields == {
            "src": "203.0.113.42",
            "method": "GET",
            "path": "/api/data",
            "status": 200,
            "bytes": 5432,
            "user_agent": "Mozilla/5.0",
            "rt": 0.234,
            "upstream_time": "0.189",
            "host": HOST,
        }

    def test_caddy_style_format(self):
        fmt = LogFormat(
            name="caddy-custom",
            pattern=r"^(\S+) \[([^\]]+)\] (\S+) (\S+) (\d+) (\d+) ([0-9.]+)ms",
            fields={"src": "1", "method": "3", "path": "4", "status": "5", "bytes": "6", "rt": "7"},
        )
        line = "192.168.1.25 [22/Sep/2025:17:04:36 +0000] GET /health 200 2 0.5ms"
        fields = parse_custom_format(_line(line), HOST, fmt)
        assert fields["status"] == 200
        assert fields["bytes"] == 2
        assert fields["rt"] == 0.5
        assert fields["host"] == HOST

    def test_coercion_failure_keeps_raw_string(self):
        fmt = LogFormat(pattern=r"(\S+) (\S+)", fields={"status": "1", "rt": "2"})
        fields = parse_custom_format(_line("OK fast"), HOST, fmt)
        assert fields["status"] == "OK"
        assert fields["rt"] == "fast"

    @pytest.mark.parametrize("captured", ["nan", "inf", "-Infinity", "1e999"])
    def test_non_finite_rt_keeps_raw_string(self, captured):
        fmt = LogFormat(pattern=r"rt=(\S+)", fields={"rt": "1"})
        fields = parse_custom_format(_line(f"rt={captured}"), HOST, fmt)
        assert fields["rt"] == captured
        assert json.loads(Event.structured(fields).to_json())["rt"] == captured

    def test_defaults_applied_then_overridden(self):
        fmt = LogFormat(
            pattern=r"level=(\w+)",
            fields={"level": "1"},
            default={"level": "info", "service": "billing", "host": "configured-host"},
        )
        fields = parse_custom_format(_line("level=error"), HOST, fmt)
        assert fields == {"level": "error", "service": "billing", "host": "configured-host"}

    def test_filename_placeholder(self):
        fmt = LogFormat(pattern=r"(.+)", fields={"message": "1", "file": "filename"})
        fields = parse_custom_format(_line("hello", source="/srv/app.log"), HOST, fmt)
        assert fields["file"] == "/srv/app.log"
        assert fields["host"] == HOST

    def test_out_of_range_group_is_ignored(self):
        fmt = LogFormat(pattern=r"(\w+)", fields={"word": "1", "missing": "5", "odd": "abc"})
        fields = parse_custom_format(_line("hello"), HOST, fmt)
        assert fields == {"word": "hello", "host": HOST}

    def test_no_match_returns_none(self):
        fmt = LogFormat(pattern=r"^\d+$", fields={"n": "1"})
        assert parse_custom_format(_line("not a number"), HOST, fmt) is None

    def test_invalid_pattern_returns_none(self):
        fmt = LogFormat(pattern=r"(unclosed", fields={"x": "1"})
        assert parse_custom_format(_line("(unclosed"), HOST, fmt) is None


class TestJSONObject:
    def test_injects_host_when_absent(self):
        assert parse_json_object(_line('{"a":1}'), HOST) == {"a": 1, "host": HOST}

    def test_keeps_existing_host_and_fields(self):
        line = '{"msg":"hi","host":"host1","src":"/var/log/test.log","status":200}'
        assert parse_json_object(_line(line), HOST) == {
            "msg": "hi", "host": "host1", "src": "/var/log/test.log", "status": 200,
        }

    @pytest.mark.parametrize("text", ["[1, 2]", '"just a string"', "42", "{broken", ""])
    def test_non_objects_rejected(self, text):
        assert parse_json_object(_line(text), HOST) is None

    @pytest.mark.parametrize("text", [
        '{"a": NaN}',
        '{"a": Infinity}',
        '{"a": -Infinity}',
        '{"a": 1e999}',
        '{"nested": {"rt": NaN}}',
    ])
    def test_non_finite_numbers_rejected(self, text):
        assert parse_json_object(_line(text), HOST) is None

    def test_large_finite_numbers_kept(self):
        assert parse_json_object(_line('{"a": 1e300, "b": 12345678901234567890}'), HOST) == {
            "a": 1e300, "b": 12345678901234567890, "host": HOST,
        }

    def test_non_finite_line_ships_as_raw(self):
        event, accepted = Normalizer(hostname=HOST).normalize(_line('{"a": NaN}'))
        assert accepted
        assert event.kind is EventKind.RAW
        assert json.loads(event.to_json()) == '{"a": NaN}'


class TestAccessLog:
    def test_common_log_format(self):
        line = '127.0.0.1 - - [22/Sep/2025:17:04:36 +0000] "GET /x HTTP/1.1" 200 2326'
        entry = parse_access_log(_line(line), HOST)
        assert entry["status"] == 200
        assert entry["bytes"] == 2326
        assert entry["method"] == "GET"
        assert entry["path"] == "/x"
        assert entry["ip"] == "127.0.0.1"
        assert entry["rt"] == 0.0
        assert entry["host"] == HOST
        assert entry["src"] == SRC
        assert "user_agent" not in entry

    def test_combined_log_format(self):
        line = ('86.94.167.37 - - [22/Sep/2025:17:04:36 +0000] "GET /article/test HTTP/2.0" 200 18547 '
                '"https://accounts.google.com/" "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)"')
        entry = parse_access_log(_line(line), HOST)
        assert entry["path"] == "/article/test"
        assert entry["bytes"] == 18547
        assert entry["user_agent"] == "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)"
        assert entry["rt"] == 0.0

    def test_nginx_with_response_time(self):
        line = ('192.168.1.1 - - [22/Sep/2025:17:04:36 +0000] "POST /api/test HTTP/1.1" 201 1024 '
                '"https://example.com/" "curl/7.68.0" 0.123')
        entry = parse_access_log(_line(line), HOST)
        assert entry["method"] == "POST"
        assert entry["status"] == 201
        assert entry["rt"] == 0.123
        assert entry["user_agent"] == "curl/7.68.0"

    def test_apache_with_user(self):
        line = ('10.0.0.1 - frank [10/Oct/2000:13:55:36 -0700] "GET /apache_pb.gif HTTP/1.0" 200 2326 '
                '"http://www.example.com/start.html" "Mozilla/4.08 [en] (Win98; I ;Nav)"')
        entry = parse_access_log(_line(line), HOST)
        assert entry["path"] == "/apache_pb.gif"
        assert entry["ip"] == "10.0.0.1"
        assert entry["user_agent"] == "Mozilla/4.08 [en] (Win98; I ;Nav)"

    def test_dash_bytes_becomes_zero(self):
        line = '127.0.0.1 - - [22/Sep/2025:17:04:36 +0000] "HEAD / HTTP/1.1" 304 -'
        entry = parse_access_log(_line(line), HOST)
        assert entry["status"] == 304
        assert entry["bytes"] == 0

    def test_not_an_access_log(self):
        assert parse_access_log(_line("this is not a valid access log line"), HOST) is None


class TestNormalizer:
    def test_custom_format_wins(self):
        fmt = LogFormat(pattern=r"^\{(.*)\}$", fields={"inner": "1"})
        event, ok = Normalizer(HOST).normalize(_line('{"a":1}'), fmt)
        assert ok
        assert event.value == {"inner": '"a":1', "host": HOST}

    def test_falls_through_custom_format_to_json(self):
        fmt = LogFormat(pattern=r"^never$", fields={})
        event, ok = Normalizer(HOST).normalize(_line('{"a":1}'), fmt)
        assert ok
        assert event.kind is EventKind.STRUCTURED
        assert event.value == {"a": 1, "host": HOST}

    def test_access_log_fallback(self):
        line = '127.0.0.1 - - [22/Sep/2025:17:04:36 +0000] "GET /x HTTP/1.1" 200 2326'
        event, ok = Normalizer(HOST).normalize(_line(line))
        assert ok
        assert event.value["status"] == 200
        assert event.value["path"] == "/x"

    def test_unparseable_passes_through_raw(self):
        event, ok = Normalizer(HOST).normalize(_line("random text that cannot be parsed"))
        assert ok
        assert event.is_raw
        assert event.value == "random text that cannot be parsed"

    def test_unparseable_dropped_by_policy(self):
        event, ok = Normalizer(HOST, unparsed="drop").normalize(_line("random text"))
        assert ok is False
        assert event is None

    def test_hostname_defaults_to_machine(self):
        assert Normalizer().hostname


class TestEventSerialization:
    def test_structured_stays_object(self):
        assert json.loads(Event.structured({"a": 1}).to_json()) == {"a": 1}

    def test_raw_becomes_json_string(self):
        text = '[2024-01-15 10:30:46] production.ERROR: "quoted" timeout'
        assert json.loads(Event.raw(text).to_json()) == text

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_floats_refused(self, value):
        with pytest.raises(ValueError):
            Event.structured({"rt": value}).to_json()
