"""Tests for access-log line parsing."""

from datetime import datetime, timezone

from aiproxy.parsers import parse_json_line, parse_line, parse_text_line


class TestSquidLines:
    def test_absolute_url(self, make_line):
        rec = parse_text_line(make_line("http://example.com/page", ts=1718000000.123))
        assert rec is not None
        assert rec.url == "http://example.com/page"
        assert rec.host == "example.com"
        assert rec.method == "GET"
        assert rec.timestamp == datetime.fromtimestamp(1718000000.123, tz=timezone.utc)

    def test_connect_becomes_https(self, make_line):
        rec = parse_text_line(make_line("example.com:443", method="CONNECT", host="example.com:443"))
        assert rec.url == "https://example.com:443"
        assert rec.method == "CONNECT"

    def test_connect_without_host_uses_target(self, make_line):
        rec = parse_text_line(make_line("b.test:443", method="CONNECT", host="-"))
        assert rec.url == "https://b.test:443"
        assert rec.host == "b.test:443"

    def test_relative_url_uses_host(self, make_line):
        rec = parse_text_line(make_line("/index.html", host="a.test"))
        assert rec.url == "http://a.test"

    def test_too_few_fields(self):
        assert parse_text_line("1718000000.000 12 1.2.3.4 TCP_MISS/200") is None

    def test_bad_timestamp(self, make_line):
        line = make_line("http://a.test/").replace("1718000000.000", "yesterday", 1)
        assert parse_text_line(line) is None

    def test_no_url_or_host(self, make_line):
        assert parse_text_line(make_line("-", host="-")) is None


class TestJsonLines:
    def test_minimal_entry(self):
        rec = parse_json_line('{"url": "https://a.test/", "ts": "2024-06-10T06:13:20Z"}')
        assert rec.url == "https://a.test/"
        assert rec.host == "a.test"
        assert rec.method is None
        assert rec.timestamp == datetime(2024, 6, 10, 6, 13, 20, tzinfo=timezone.utc)

    def test_naive_timestamp_is_utc(self):
        rec = parse_json_line('{"url": "https://a.test/", "ts": "2024-06-10T06:13:20"}')
        assert rec.timestamp.tzinfo is not None

    def test_missing_url(self):
        assert parse_json_line('{"ts": "2024-06-10T06:13:20Z"}') is None

    def test_empty_url(self):
        assert parse_json_line('{"url": "", "ts": "2024-06-10T06:13:20Z"}') is None

    def test_invalid_json(self):
        assert parse_json_line('{"url": ') is None

    def test_bad_timestamp(self):
        assert parse_json_line('{"url": "https://a.test/", "ts": 12}') is None


class TestAutoDetect:
    def test_blank_line(self):
        assert parse_line("   ") is None

    def test_json_detected(self):
        rec = parse_line('  {"url": "https://a.test/", "ts": "2024-06-10T06:13:20Z"}\n')
        assert rec.url == "https://a.test/"

    def test_text_detected(self, make_line):
        rec = parse_line(make_line("https://b.test/") + "\n")
        assert rec.url == "https://b.test/"

    def test_garbage(self):
        assert parse_line("not a log line at all") is None
