"""Tests for the resilient Drive fetcher."""

import socket

import pytest
import requests

from caption_overlay.errors import (
    ConfirmationRequiredError,
    FetchError,
    TransientNetworkFailure,
)
from caption_overlay.fetcher import (
    ConfirmationRequired,
    FetchPlan,
    ResilientFetcher,
    Success,
    TransportConfig,
    describe_http_error,
    extract_confirmation_token,
    is_markup_content_type,
    is_transient_error,
)
from caption_overlay.source import resolve_reference

FILE_ID = "1AbCdEfGh"
SOURCE = f"https://drive.google.com/file/d/{FILE_ID}/view"

INTERSTITIAL = (
    "<html><body>Google Drive can't scan this file for viruses."
    '<form action="https://drive.google.com/uc"><input type="hidden" name="id"></form>'
    "</body></html>"
)


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code=200, content_type="video/mp4", text="", chunks=(b"",)):
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self.text = text
        self._chunks = list(chunks)
        self.closed = False

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
        return False


class FakeSession:
    """Session returning (or raising) scripted outcomes in order."""

    def __init__(self, script, calls):
        self._script = script
        self._calls = calls
        self.headers = {}
        self.max_redirects = 30
        self.closed = False

    def close(self):
        self.closed = True

    def get(self, url, stream=False, timeout=None):
        self._calls.append({"url": url, "timeout": timeout, "ua": self.headers.get("User-Agent")})
        outcome = self._script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_fetcher(script, sessions=None, **kwargs):
    """Fetcher whose sessions share one script; returns (fetcher, calls, sleeps).

    Sessions created by the fetcher are appended to ``sessions`` if given.
    """
    calls = []
    sleeps = []
    sessions = [] if sessions is None else sessions

    def session_factory():
        session = FakeSession(script, calls)
        sessions.append(session)
        return session

    fetcher = ResilientFetcher(
        session_factory=session_factory,
        sleep=sleeps.append,
        **kwargs,
    )
    return fetcher, calls, sleeps


def html_page(body=INTERSTITIAL):
    return FakeResponse(content_type="text/html; charset=utf-8", text=body)


class TestExtractConfirmationToken:
    """Tests for confirmation token extraction."""

    def test_query_token(self):
        """Test a token in a query string."""
        assert extract_confirmation_token('<a href="/uc?export=download&confirm=AbC_1-2">') == "AbC_1-2"

    def test_json_token(self):
        """Test a token in embedded JSON."""
        assert extract_confirmation_token('{"confirm":"xYz9"}') == "xYz9"

    def test_hidden_input_token(self):
        """Test a token carried by a hidden form field."""
        page = '<input type="hidden" name="confirm" value="t0ken">'

        assert extract_confirmation_token(page) == "t0ken"

    def test_download_link(self):
        """Test a direct link is returned with entities decoded."""
        page = (
            '<a id="uc-download-link" href="https://drive.usercontent.google.com/download'
            '?id=abc&amp;export=download&amp;authuser=0">Download anyway</a>'
        )

        assert extract_confirmation_token(page) == (
            "https://drive.usercontent.google.com/download?id=abc&export=download&authuser=0"
        )

    def test_no_token(self):
        """Test pages without any token."""
        assert extract_confirmation_token(INTERSTITIAL) is None


class TestClassification:
    """Tests for response and error classification."""

    @pytest.mark.parametrize("content_type", ["text/html", "TEXT/HTML; charset=UTF-8", "application/xhtml+xml"])
    def test_markup(self, content_type):
        """Test HTML content types are markup."""
        assert is_markup_content_type(content_type)

    @pytest.mark.parametrize("content_type", ["video/mp4", "application/octet-stream", ""])
    def test_binary(self, content_type):
        """Test anything else is treated as the file."""
        assert not is_markup_content_type(content_type)

    def test_timeout_is_transient(self):
        """Test timeouts are retried."""
        assert is_transient_error(requests.exceptions.ReadTimeout("read timed out"))

    def test_dns_failure_is_transient(self):
        """Test name resolution failures are retried."""
        error = requests.exceptions.ConnectionError("Failed to resolve 'drive.google.com'")
        error.__cause__ = socket.gaierror(-2, "Name or service not known")

        assert is_transient_error(error)

    def test_connection_reset_message(self):
        """Test resets are recognised from the message alone."""
        error = requests.exceptions.ConnectionError("('Connection aborted.', ConnectionResetError(104))")

        assert is_transient_error(error)

    def test_ssl_error_is_fatal(self):
        """Test certificate problems are not retried."""
        assert not is_transient_error(requests.exceptions.SSLError("certificate verify failed"))

    def test_other_errors_fatal(self):
        """Test unrelated errors are not retried."""
        assert not is_transient_error(requests.exceptions.InvalidURL("bad"))
        assert not is_transient_error(requests.exceptions.ConnectionError("refused by policy"))

    def test_http_messages(self):
        """Test user-facing HTTP messages."""
        assert "not found" in describe_http_error(404)
        assert "Access denied" in describe_http_error(403)
        assert describe_http_error(500) == "Failed to download video: HTTP 500"


class TestFetchPlan:
    """Tests for FetchPlan."""

    def test_default_plan(self):
        """Test the three default transport configs."""
        plan = FetchPlan.default()

        assert len(plan) == 3
        assert [config.timeout for config in plan] == [300.0, 180.0, 120.0]
        assert [config.max_redirects for config in plan] == [5, 5, 3]
        assert list(plan)[2].user_agent == "curl/7.68.0"
        assert plan.total_attempts == 9

    def test_empty_plan_rejected(self):
        """Test a plan needs at least one config."""
        with pytest.raises(ValueError):
            FetchPlan(configs=())

    def test_zero_tries_rejected(self):
        """Test a transport config must allow at least one try."""
        with pytest.raises(ValueError, match="max_tries"):
            TransportConfig("test-agent", 5.0, 2, max_tries=0)


class TestRequest:
    """Tests for ResilientFetcher.request."""

    def test_binary_success(self):
        """Test a binary response is returned directly."""
        fetcher, calls, sleeps = make_fetcher([FakeResponse()])

        outcome = fetcher.request("https://example.test/file")

        assert isinstance(outcome, Success)
        assert len(calls) == 1
        assert calls[0]["timeout"] == 300.0
        assert sleeps == []

    def test_interstitial_outcome(self):
        """Test an HTML page becomes ConfirmationRequired."""
        page = html_page('<a href="/uc?export=download&amp;confirm=tok">')
        fetcher, _, _ = make_fetcher([page])

        outcome = fetcher.request("https://example.test/file")

        assert isinstance(outcome, ConfirmationRequired)
        assert outcome.token_or_url == "tok"
        assert not outcome.is_url
        assert page.closed

    def test_retries_then_succeeds(self):
        """Test transient failures are retried with backoff."""
        fetcher, calls, sleeps = make_fetcher(
            [requests.exceptions.ConnectTimeout("timed out"), FakeResponse()]
        )

        outcome = fetcher.request("https://example.test/file")

        assert isinstance(outcome, Success)
        assert len(calls) == 2
        assert sleeps == [1.0]

    def test_all_transient_exhausts_plan(self):
        """Test exactly nine attempts across three configs before giving up."""
        script = [requests.exceptions.ReadTimeout("timed out") for _ in range(9)]
        fetcher, calls, sleeps = make_fetcher(script)

        with pytest.raises(TransientNetworkFailure) as exc_info:
            fetcher.request("https://example.test/file")

        assert len(calls) == 9
        assert fetcher.attempts == 9
        assert [call["timeout"] for call in calls] == [300.0] * 3 + [180.0] * 3 + [120.0] * 3
        assert calls[-1]["ua"] == "curl/7.68.0"
        # Backoff 1s, 2s within each config; 2s pause between configs
        assert sleeps == [1.0, 2.0, 2.0, 1.0, 2.0, 2.0, 1.0, 2.0]
        assert exc_info.value.recoverable is True
        assert "9 attempts" in exc_info.value.message

    def test_fatal_status_not_retried(self):
        """Test a 404 ends the fetch immediately."""
        fetcher, calls, sleeps = make_fetcher([FakeResponse(status_code=404)])

        with pytest.raises(FetchError, match="Video not found"):
            fetcher.request("https://example.test/file")

        assert len(calls) == 1
        assert sleeps == []

    def test_fatal_transport_error_not_retried(self):
        """Test non-network errors are not retried."""
        fetcher, calls, _ = make_fetcher([requests.exceptions.SSLError("certificate verify failed")])

        with pytest.raises(FetchError):
            fetcher.request("https://example.test/file")

        assert len(calls) == 1

    def test_custom_plan(self):
        """Test a single-config plan with two tries."""
        plan = FetchPlan(configs=(TransportConfig("test-agent", 5.0, 2, max_tries=2),))
        script = [requests.exceptions.ReadTimeout("timed out")] * 2
        fetcher, calls, sleeps = make_fetcher(script, plan=plan)

        with pytest.raises(TransientNetworkFailure):
            fetcher.request("https://example.test/file")

        assert len(calls) == 2
        assert calls[0]["ua"] == "test-agent"
        assert sleeps == [1.0]

    def test_exhausted_sessions_closed(self):
        """Test every session used for failed configs is closed."""
        sessions = []
        script = [requests.exceptions.ReadTimeout("timed out") for _ in range(9)]
        fetcher, _, _ = make_fetcher(script, sessions=sessions)

        with pytest.raises(TransientNetworkFailure):
            fetcher.request("https://example.test/file")

        assert len(sessions) == 3
        assert all(session.closed for session in sessions)

    def test_success_keeps_session_open(self):
        """Test the session behind a binary response stays open until streamed."""
        sessions = []
        fetcher, _, _ = make_fetcher([FakeResponse()], sessions=sessions)

        outcome = fetcher.request("https://example.test/file")

        assert outcome.session is sessions[0]
        assert not sessions[0].closed
        outcome.close()
        assert sessions[0].closed


class TestResolveAndFetch:
    """Tests for the confirmation flow and streaming to disk."""

    def test_interstitials_then_binary(self, tmp_path):
        """Test two interstitials followed by the file from the alternate host."""
        script = [
            html_page('<a href="/uc?export=download&amp;confirm=AbC">'),
            html_page(),
            FakeResponse(chunks=[b"video-", b"bytes"]),
        ]
        fetcher, calls, _ = make_fetcher(script)
        reference = resolve_reference(SOURCE)
        output = tmp_path / "input.mp4"

        fetcher.fetch(reference, output)

        assert output.read_bytes() == b"video-bytes"
        assert [call["url"] for call in calls] == [
            reference.primary_url,
            reference.confirmed_url("AbC"),
            reference.alternate_url,
        ]
        assert not (tmp_path / "input.mp4.part").exists()

    def test_all_sessions_closed_after_fetch(self, tmp_path):
        """Test no session is left open once the file is on disk."""
        sessions = []
        script = [html_page(), FakeResponse(chunks=[b"x"])]
        fetcher, _, _ = make_fetcher(script, sessions=sessions)

        fetcher.fetch(resolve_reference(SOURCE), tmp_path / "input.mp4")

        assert len(sessions) == 2
        assert all(session.closed for session in sessions)

    def test_primary_url_tried_first(self, tmp_path):
        """Test the first request goes to the primary URL."""
        fetcher, calls, _ = make_fetcher([FakeResponse(chunks=[b"x"])])
        reference = resolve_reference(SOURCE)

        fetcher.fetch(reference, tmp_path / "input.mp4")

        assert calls[0]["url"] == reference.primary_url

    def test_token_followed(self, tmp_path):
        """Test an extracted token is used on the primary URL."""
        script = [
            html_page('<a href="/uc?export=download&amp;confirm=AbC">'),
            FakeResponse(chunks=[b"x"]),
        ]
        fetcher, calls, _ = make_fetcher(script)
        reference = resolve_reference(SOURCE)

        fetcher.fetch(reference, tmp_path / "input.mp4")

        assert calls[1]["url"] == reference.confirmed_url("AbC")

    def test_link_followed(self, tmp_path):
        """Test an extracted link is requested as-is."""
        link = "https://drive.usercontent.google.com/download?id=abc&amp;export=download"
        script = [html_page(f'<a href="{link}">'), FakeResponse(chunks=[b"x"])]
        fetcher, calls, _ = make_fetcher(script)

        fetcher.fetch(resolve_reference(SOURCE), tmp_path / "input.mp4")

        assert calls[1]["url"] == "https://drive.usercontent.google.com/download?id=abc&export=download"

    def test_alternate_host_used(self, tmp_path):
        """Test the alternate URL is tried when no token is found."""
        fetcher, calls, _ = make_fetcher([html_page(), FakeResponse(chunks=[b"x"])])
        reference = resolve_reference(SOURCE)

        fetcher.fetch(reference, tmp_path / "input.mp4")

        assert calls[1]["url"] == reference.alternate_url

    def test_confirmation_required(self, tmp_path):
        """Test every route ending in a page raises ConfirmationRequiredError."""
        fetcher, calls, _ = make_fetcher([html_page(), html_page()])
        output = tmp_path / "input.mp4"

        with pytest.raises(ConfirmationRequiredError, match="publicly accessible"):
            fetcher.fetch(resolve_reference(SOURCE), output)

        assert len(calls) == 2
        assert not output.exists()

    def test_max_bytes(self, tmp_path):
        """Test oversized downloads are aborted and removed."""
        fetcher, _, _ = make_fetcher([FakeResponse(chunks=[b"x" * 10, b"y" * 10])], max_bytes=15)
        output = tmp_path / "input.mp4"

        with pytest.raises(FetchError, match="maximum allowed size"):
            fetcher.fetch(resolve_reference(SOURCE), output)

        assert not output.exists()
        assert not (tmp_path / "input.mp4.part").exists()

    def test_stream_error_leaves_no_file(self, tmp_path):
        """Test a broken stream removes the partial file."""
        response = FakeResponse(chunks=[b"partial", requests.exceptions.ChunkedEncodingError("broken")])
        fetcher, _, _ = make_fetcher([response])
        output = tmp_path / "input.mp4"

        with pytest.raises(FetchError, match="Download failed"):
            fetcher.fetch(resolve_reference(SOURCE), output)

        assert not output.exists()
        assert not (tmp_path / "input.mp4.part").exists()
        assert response.closed

    def test_creates_parent_directory(self, tmp_path):
        """Test the output directory is created."""
        fetcher, _, _ = make_fetcher([FakeResponse(chunks=[b"x"])])
        output = tmp_path / "nested" / "input.mp4"

        fetcher.fetch(resolve_reference(SOURCE), output)

        assert output.exists()
