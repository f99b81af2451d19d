import json
import logging
from collections.abc import Mapping, Sequence
from http.client import RemoteDisconnected
from time import sleep
from typing import Any, Protocol
from urllib import error, request

from app.core.config import Settings

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTION = (
    "Analyze the transcript. 1) List speakers. 2) Provide a concise 3-sentence summary."
)
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class SummarizationError(Exception):
    pass


class TranscriptSummarizer(Protocol):
    name: str

    def summarize(self, transcript_text: str) -> str:
        ...


class _JsonApiClient:
    name = "json_api"

    def __init__(self, timeout_seconds: float, max_attempts: int = 2) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(max_attempts, 1)

    def _post_json(
        self,
        endpoint: str,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> dict[str, Any]:
        req = request.Request(
            endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", **headers},
            method="POST",
        )
        response_body: bytes | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    response_body = response.read()
                break
            except TimeoutError as exc:
                if attempt >= self.max_attempts:
                    raise SummarizationError(f"{self.name} request timed out.") from exc
            except RemoteDisconnected as exc:
                if attempt >= self.max_attempts:
                    raise SummarizationError(
                        f"{self.name} connection was closed before sending a response.",
                    ) from exc
            except error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="ignore")
                if exc.code not in RETRYABLE_STATUS_CODES or attempt >= self.max_attempts:
                    raise SummarizationError(
                        f"{self.name} HTTP {exc.code}: {body or 'empty response body'}",
                    ) from exc
            except error.URLError as exc:
                if attempt >= self.max_attempts:
                    raise SummarizationError(f"{self.name} connection error: {exc.reason}") from exc

            sleep(0.5 * attempt)

        if response_body is None:
            raise SummarizationError(f"{self.name} request failed after multiple attempts.")

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise SummarizationError(f"{self.name} returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise SummarizationError(f"{self.name} response is not a JSON object.")
        return parsed_body


class OpenAiSummarizationClient(_JsonApiClient):
    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        api_base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        max_attempts: int = 2,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, max_attempts=max_attempts)
        self.api_key = api_key
        self.model = model
        self.api_base_url = api_base_url.rstrip("/")

    def summarize(self, transcript_text: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SUMMARY_INSTRUCTION},
                {"role": "user", "content": transcript_text},
            ],
        }
        response_payload = self._post_json(
            f"{self.api_base_url}/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return self._extract_content(response_payload)

    def _extract_content(self, payload: Mapping[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise SummarizationError("openai response missing choices.")
        first_choice = choices[0]
        if not isinstance(first_choice, Mapping):
            raise SummarizationError("openai response choice is invalid.")
        message = first_choice.get("message")
        content = message.get("content") if isinstance(message, Mapping) else None
        if not isinstance(content, str) or not content.strip():
            raise SummarizationError("openai response did not include summary text.")
        return content.strip()


class SarvamSummarizationClient(_JsonApiClient):
    name = "sarvam"

    def __init__(
        self,
        api_key: str,
        api_base_url: str = "https://api.sarvam.ai",
        timeout_seconds: float = 30.0,
        max_attempts: int = 2,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, max_attempts=max_attempts)
        self.api_key = api_key
        self.api_base_url = api_base_url.rstrip("/")

    def summarize(self, transcript_text: str) -> str:
        response_payload = self._post_json(
            f"{self.api_base_url}/summarize",
            {
                "text": transcript_text,
                "domain": "meeting",
                "output_format": "bullet",
                "language": "en-IN",
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        summary = response_payload.get("summary")
        if isinstance(summary, list):
            summary = "\n".join(str(item).strip() for item in summary if str(item).strip())
        if not isinstance(summary, str) or not summary.strip():
            raise SummarizationError("sarvam response did not include summary text.")
        return summary.strip()


class SummarizationService:
    def __init__(self, providers: Sequence[TranscriptSummarizer]) -> None:
        self.providers = list(providers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SummarizationService":
        providers: list[TranscriptSummarizer] = []
        if settings.openai_api_key:
            providers.append(
                OpenAiSummarizationClient(
                    api_key=settings.openai_api_key,
                    model=settings.openai_model,
                    api_base_url=settings.openai_api_url,
                    timeout_seconds=settings.openai_api_timeout_seconds,
                ),
            )
        if settings.sarvam_api_key:
            providers.append(
                SarvamSummarizationClient(
                    api_key=settings.sarvam_api_key,
                    api_base_url=settings.sarvam_api_url,
                    timeout_seconds=settings.sarvam_api_timeout_seconds,
                ),
            )
        return cls(providers)

    def summarize(self, transcript_text: str) -> str:
        if not self.providers:
            raise SummarizationError("No summarization provider is configured.")

        failures: list[str] = []
        for provider in self.providers:
            try:
                return provider.summarize(transcript_text)
            except SummarizationError as exc:
                logger.warning("Summarization provider failed provider=%s error=%s", provider.name, exc)
                failures.append(f"{provider.name}: {exc}")

        raise SummarizationError("All summarization providers failed. " + "; ".join(failures))
