"""Tests for nas.utils.parsing: strip_fences, message_text, invoke_with_retry."""

from unittest.mock import patch, MagicMock

import anthropic
import httpx
import pytest

from nas.utils.parsing import invoke_with_retry, message_text, strip_fences


# --- strip_fences ---

class TestStripFences:
    def test_strip_json_fences(self):
        text = '```json\n{"key": "value"}\n```'
        assert strip_fences(text) == '{"key": "value"}'

    def test_strip_plain_fences(self):
        text = '```\n{"key": "value"}\n```'
        assert strip_fences(text) == '{"key": "value"}'

    def test_no_fences_returns_stripped(self):
        text = '  {"key": "value"}  '
        assert strip_fences(text) == '{"key": "value"}'

    def test_fences_with_extra_whitespace(self):
        text = '```json\n\n  {"key": "value"}  \n\n```'
        assert strip_fences(text).startswith("{")


# --- message_text ---

class TestMessageText:
    def test_string_content(self):
        assert message_text(MagicMock(content="plain")) == "plain"

    def test_content_blocks_join_text_only(self):
        message = MagicMock(content=[
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Passed "},
            {"type": "text", "text": "on attempt 2."},
        ])
        assert message_text(message) == "Passed on attempt 2."

    def test_bare_string(self):
        assert message_text("raw") == "raw"

    def test_empty_content(self):
        assert message_text(MagicMock(content=None)) == ""


# --- invoke_with_retry ---

class TestInvokeWithRetry:
    def _mock_llm(self, side_effect):
        llm = MagicMock()
        llm.invoke.side_effect = side_effect
        return llm

    @patch("nas.config._config", {"llm_max_retries": 3})
    def test_succeeds_on_first_try(self):
        response = MagicMock()
        response.content = '{"ok": true}'
        llm = self._mock_llm([response])

        result = invoke_with_retry(llm, [{"role": "user", "content": "hi"}])

        assert result.content == '{"ok": true}'
        assert llm.invoke.call_count == 1

    @patch("nas.config._config", {"llm_max_retries": 3})
    def test_retries_on_connect_error(self):
        response = MagicMock()
        response.content = '{"ok": true}'
        llm = self._mock_llm([
            httpx.ConnectError("connection refused"),
            response,
        ])

        result = invoke_with_retry(llm, [{"role": "user", "content": "hi"}])

        assert result.content == '{"ok": true}'
        assert llm.invoke.call_count == 2

    @patch("nas.config._config", {"llm_max_retries": 3})
    def test_retries_on_timeout(self):
        response = MagicMock()
        response.content = '{"ok": true}'
        llm = self._mock_llm([
            httpx.ReadTimeout("read timed out"),
            response,
        ])

        result = invoke_with_retry(llm, [{"role": "user", "content": "hi"}])

        assert result.content == '{"ok": true}'
        assert llm.invoke.call_count == 2

    @patch("nas.config._config", {"llm_max_retries": 3})
    def test_retries_on_429(self):
        response_429 = httpx.Response(429, request=httpx.Request("POST", "https://api.example.com"))
        response = MagicMock()
        response.content = '{"ok": true}'
        llm = self._mock_llm([
            httpx.HTTPStatusError("rate limited", request=response_429.request, response=response_429),
            response,
        ])

        result = invoke_with_retry(llm, [{"role": "user", "content": "hi"}])

        assert result.content == '{"ok": true}'
        assert llm.invoke.call_count == 2

    @patch("nas.config._config", {"llm_max_retries": 2})
    def test_raises_after_max_retries(self):
        llm = self._mock_llm([
            httpx.ConnectError("fail 1"),
            httpx.ConnectError("fail 2"),
            httpx.ConnectError("fail 3"),
        ])

        with pytest.raises(httpx.ConnectError):
            invoke_with_retry(llm, [{"role": "user", "content": "hi"}])

        assert llm.invoke.call_count == 3  # 1 initial + 2 retries

    @patch("nas.config._config", {"llm_max_retries": 3})
    def test_does_not_retry_on_auth_error(self):
        response_401 = httpx.Response(401, request=httpx.Request("POST", "https://api.example.com"))
        llm = self._mock_llm([
            httpx.HTTPStatusError("unauthorized", request=response_401.request, response=response_401),
        ])

        with pytest.raises(httpx.HTTPStatusError):
            invoke_with_retry(llm, [{"role": "user", "content": "hi"}])

        assert llm.invoke.call_count == 1  # no retry for 401

    @patch("nas.config._config", {"llm_max_retries": 3})
    def test_retries_on_anthropic_overloaded(self):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        overloaded = anthropic.APIStatusError(
            "overloaded", response=httpx.Response(529, request=request), body=None,
        )
        response = MagicMock()
        response.content = "ok"
        llm = self._mock_llm([overloaded, response])

        assert invoke_with_retry(llm, []).content == "ok"
        assert llm.invoke.call_count == 2

    @patch("nas.config._config", {"llm_max_retries": 3})
    def test_does_not_retry_on_anthropic_bad_request(self):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        bad = anthropic.BadRequestError(
            "tool_choice invalid", response=httpx.Response(400, request=request), body=None,
        )
        llm = self._mock_llm([bad])

        with pytest.raises(anthropic.BadRequestError):
            invoke_with_retry(llm, [])

        assert llm.invoke.call_count == 1
