"""Tests for the retrying page fetcher."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from harvester.errors import UpstreamFetchError
from harvester.parsing.fetch import PageFetcher, classify_status, declared_charset, decode_body


def _response(status: int = 200, body: bytes = b"<html></html>", content_type: str = "text/html") -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.content = body
    response.headers = {"Content-Type": content_type}
    response.encoding = "ISO-8859-1"
    response.url = "https://example.com/final"
    return response


def _fetcher(*outcomes, max_retries: int = 3) -> tuple[PageFetcher, MagicMock, list[float]]:
    session = MagicMock()
    session.get.side_effect = list(outcomes)
    sleeps: list[float] = []
    fetcher = PageFetcher(
        session=session,
        user_agent="TestBot/1.0",
        timeout=10,
        max_retries=max_retries,
        initial_backoff=1.0,
        max_backoff=30.0,
        sleep=sleeps.append,
    )
    return fetcher, session, sleeps


class TestClassifyStatus:
    @pytest.mark.parametrize(
        "status,category",
        [(200, None), (301, None), (404, "HTTP_4XX"), (429, "RATE_LIMITED"), (500, "HTTP_5XX"), (503, "HTTP_5XX")],
    )
    def test_categories(self, status: int, category: str | None) -> None:
        assert classify_status(status) == category


class TestPageFetcher:
    """Tests for PageFetcher.fetch."""

    def test_success(self) -> None:
        fetcher, session, sleeps = _fetcher(_response(body="<p>시험</p>".encode("utf-8")))

        page = fetcher.fetch("https://example.com/a")

        assert page.is_html
        assert page.text == "<p>시험</p>"
        assert page.final_url == "https://example.com/final"
        assert sleeps == []
        kwargs = session.get.call_args.kwargs
        assert kwargs["timeout"] == 10
        assert kwargs["headers"]["User-Agent"] == "TestBot/1.0"

    def test_retries_server_errors_with_backoff(self) -> None:
        fetcher, session, sleeps = _fetcher(_response(503), _response(502), _response(200))

        page = fetcher.fetch("https://example.com/a")

        assert page.status_code == 200
        assert session.get.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_gives_up_after_max_retries(self) -> None:
        fetcher, session, _ = _fetcher(*[requests.Timeout("slow")] * 4)

        with pytest.raises(UpstreamFetchError) as exc_info:
            fetcher.fetch("https://example.com/a")

        assert exc_info.value.category == "TIMEOUT"
        assert session.get.call_count == 4

    def test_client_errors_are_not_retried(self) -> None:
        fetcher, session, _ = _fetcher(_response(404))

        with pytest.raises(UpstreamFetchError) as exc_info:
            fetcher.fetch("https://example.com/missing")

        assert exc_info.value.category == "HTTP_4XX"
        assert exc_info.value.status_code == 404
        assert session.get.call_count == 1

    def test_rate_limit_is_retried(self) -> None:
        fetcher, session, _ = _fetcher(_response(429), _response(200))

        fetcher.fetch("https://example.com/a")

        assert session.get.call_count == 2

    def test_connection_error_category(self) -> None:
        fetcher, _, _ = _fetcher(requests.ConnectionError("refused"), max_retries=0)

        with pytest.raises(UpstreamFetchError) as exc_info:
            fetcher.fetch("https://example.com/a")

        assert exc_info.value.category == "CONNECTION_ERROR"

    def test_single_attempt_override(self) -> None:
        fetcher, session, _ = _fetcher(_response(500), _response(200))

        with pytest.raises(UpstreamFetchError):
            fetcher.fetch("https://example.com/a", retries=0)

        assert session.get.call_count == 1

    def test_non_html_content(self) -> None:
        fetcher, _, _ = _fetcher(_response(body=b"%PDF-1.4", content_type="application/pdf"))

        assert not fetcher.fetch("https://example.com/a.pdf").is_html


class TestDecoding:
    """Tests for charset handling of fetched bodies."""

    def test_charsetless_utf8_page(self) -> None:
        body = "<html><head><title>수학 기출문제</title></head></html>".encode("utf-8")
        fetcher, _, _ = _fetcher(_response(body=body, content_type="text/html"))

        page = fetcher.fetch("https://example.com/a")

        assert page.encoding is None
        assert "수학 기출문제" in page.text

    def test_declared_charset(self) -> None:
        body = "<p>국어</p>".encode("euc-kr")
        fetcher, _, _ = _fetcher(_response(body=body, content_type='text/html; charset="EUC-KR"'))

        page = fetcher.fetch("https://example.com/a")

        assert page.encoding == "EUC-KR"
        assert page.text == "<p>국어</p>"

    def test_meta_charset(self) -> None:
        body = '<meta http-equiv="Content-Type" content="text/html; charset=euc-kr"><p>과학</p>'.encode("euc-kr")

        assert "과학" in decode_body(body)

    def test_legacy_korean_without_declaration(self) -> None:
        assert decode_body("<p>영어 듣기</p>".encode("cp949")) == "<p>영어 듣기</p>"

    def test_wrong_declaration_falls_through(self) -> None:
        assert decode_body("<p>시험</p>".encode("utf-8"), "ascii") == "<p>시험</p>"

    def test_unknown_declaration_falls_through(self) -> None:
        assert decode_body(b"<p>ok</p>", "x-made-up") == "<p>ok</p>"

    @pytest.mark.parametrize(
        "content_type,charset",
        [("text/html", None), ("text/html; charset=utf-8", "utf-8"), ("text/html;CHARSET='cp949'", "cp949")],
    )
    def test_declared_charset_parsing(self, content_type: str, charset: str | None) -> None:
        assert declared_charset(content_type) == charset
