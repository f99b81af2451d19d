import io
import json
from http.client import RemoteDisconnected
from urllib import error

import pytest

from app.core.config import Settings
from app.services.summarization_client import (
    SUMMARY_INSTRUCTION,
    OpenAiSummarizationClient,
    SarvamSummarizationClient,
    SummarizationError,
    SummarizationService,
)


class _FakeResponse:
    def __init__(self, payload: object) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def _http_error(code: int, body: bytes = b"") -> error.HTTPError:
    return error.HTTPError("https://api.example.com", code, "error", {}, io.BytesIO(body))


def test_openai_summarize_sends_chat_completion_request(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout: float) -> _FakeResponse:  # type: ignore[no-untyped-def]
        captured["url"] = req.full_url
        captured["authorization"] = req.get_header("Authorization")
        captured["payload"] = json.loads(req.data.decode("utf-8"))
        return _FakeResponse({"choices": [{"message": {"content": "  Speakers: A, B. Summary.  "}}]})

    monkeypatch.setattr("app.services.summarization_client.request.urlopen", fake_urlopen)

    client = OpenAiSummarizationClient(api_key="sk-test", timeout_seconds=0.1)
    summary = client.summarize("A: hi\nB: hello")

    assert summary == "Speakers: A, B. Summary."
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["authorization"] == "Bearer sk-test"
    assert captured["payload"] == {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "system", "content": SUMMARY_INSTRUCTION},
            {"role": "user", "content": "A: hi\nB: hello"},
        ],
    }


def test_openai_summarize_retries_rate_limit_then_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        if calls["count"] == 1:
            raise _http_error(429, b'{"error":"rate limited"}')
        return _FakeResponse({"choices": [{"message": {"content": "summary"}}]})

    monkeypatch.setattr("app.services.summarization_client.sleep", lambda _: None)
    monkeypatch.setattr("app.services.summarization_client.request.urlopen", fake_urlopen)

    client = OpenAiSummarizationClient(api_key="sk-test", timeout_seconds=0.1)

    assert client.summarize("transcript") == "summary"
    assert calls["count"] == 2


def test_openai_summarize_does_not_retry_client_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        raise _http_error(401, b'{"error":"invalid key"}')

    monkeypatch.setattr("app.services.summarization_client.request.urlopen", fake_urlopen)

    client = OpenAiSummarizationClient(api_key="sk-test", timeout_seconds=0.1)
    with pytest.raises(SummarizationError, match="HTTP 401"):
        client.summarize("transcript")

    assert calls["count"] == 1


def test_sarvam_summarize_sends_meeting_domain_and_joins_bullets(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout: float) -> _FakeResponse:  # type: ignore[no-untyped-def]
        captured["url"] = req.full_url
        captured["payload"] = json.loads(req.data.decode("utf-8"))
        return _FakeResponse({"summary": ["- Intro", "- Next steps"]})

    monkeypatch.setattr("app.services.summarization_client.request.urlopen", fake_urlopen)

    client = SarvamSummarizationClient(api_key="sarvam-key", timeout_seconds=0.1)

    assert client.summarize("transcript") == "- Intro\n- Next steps"
    assert captured["url"] == "https://api.sarvam.ai/summarize"
    assert captured["payload"] == {
        "text": "transcript",
        "domain": "meeting",
        "output_format": "bullet",
        "language": "en-IN",
    }


def test_summarization_service_falls_back_to_next_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout: float) -> _FakeResponse:  # type: ignore[no-untyped-def]
        if "openai" in req.full_url:
            raise RemoteDisconnected("closed")
        return _FakeResponse({"summary": "fallback summary"})

    monkeypatch.setattr("app.services.summarization_client.sleep", lambda _: None)
    monkeypatch.setattr("app.services.summarization_client.request.urlopen", fake_urlopen)

    service = SummarizationService.from_settings(
        Settings(openai_api_key="sk-test", sarvam_api_key="sarvam-key"),
    )

    assert [provider.name for provider in service.providers] == ["openai", "sarvam"]
    assert service.summarize("transcript") == "fallback summary"


def test_summarization_service_reports_every_failed_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        raise TimeoutError("request timed out")

    monkeypatch.setattr("app.services.summarization_client.sleep", lambda _: None)
    monkeypatch.setattr("app.services.summarization_client.request.urlopen", fake_urlopen)

    service = SummarizationService.from_settings(
        Settings(openai_api_key="sk-test", sarvam_api_key="sarvam-key"),
    )

    with pytest.raises(SummarizationError, match="openai: .*; sarvam: "):
        service.summarize("transcript")


def test_summarization_service_without_providers_fails() -> None:
    service = SummarizationService.from_settings(Settings(openai_api_key="", sarvam_api_key=""))

    with pytest.raises(SummarizationError, match="No summarization provider"):
        service.summarize("transcript")
