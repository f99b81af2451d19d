import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from time import sleep
from typing import Any, TypeVar
from urllib import error, request

from app.core.config import Settings
from app.schemas.meeting import Meeting, MeetingStatus, TranscriptPipelineResult
from app.services.meeting_store import MeetingStore, create_meeting_store
from app.services.summarization_client import SummarizationService

logger = logging.getLogger(__name__)

TRANSCRIPT_READY_EVENT = "meeting/transcript.ready"

T = TypeVar("T")


@dataclass(frozen=True)
class TranscriptReadyEvent:
    meeting_id: str
    transcript_url: str
    name: str = TRANSCRIPT_READY_EVENT


class TranscriptFetchError(Exception):
    pass


class NonRetriableStepError(Exception):
    pass


class MeetingNotFoundError(NonRetriableStepError):
    pass


class PipelineStepError(Exception):
    def __init__(self, step_name: str, attempts: int, cause: BaseException) -> None:
        self.step_name = step_name
        self.attempts = attempts
        super().__init__(f"Step {step_name} failed after {attempts} attempt(s): {cause}")


class PipelineStepExecutor:
    """Runs a named step, retrying it up to ``max_attempts`` times."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self.max_attempts = max(max_attempts, 1)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep_fn

    def run(self, step_name: str, step: Callable[..., T], *args: Any) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return step(*args)
            except NonRetriableStepError as exc:
                logger.error("Pipeline step failed permanently step=%s error=%s", step_name, exc)
                raise PipelineStepError(step_name, attempt, exc) from exc
            except Exception as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Pipeline step exhausted retries step=%s attempts=%s error=%s",
                        step_name,
                        attempt,
                        exc,
                    )
                    raise PipelineStepError(step_name, attempt, exc) from exc
                logger.warning(
                    "Pipeline step failed, retrying step=%s attempt=%s error=%s",
                    step_name,
                    attempt,
                    exc,
                )
            if self.backoff_seconds:
                self._sleep(self.backoff_seconds * attempt)
        raise RuntimeError("unreachable")


class TranscriptPipeline:
    """Fetch, summarize and finalize a meeting transcript.

    Every step is safe to re-run from scratch: the load step short-circuits
    meetings that were already processed, and the finalize step writes
    absolute values keyed by meeting id.
    """

    def __init__(
        self,
        settings: Settings,
        store: MeetingStore | None = None,
        summarizer: SummarizationService | None = None,
        step_executor: PipelineStepExecutor | None = None,
        fetch_body: Callable[[str], str] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_meeting_store(
            store_name=settings.meetings_store,
            mongodb_uri=settings.mongodb_uri,
            mongodb_db_name=settings.mongodb_db_name,
            mongodb_meetings_collection=settings.mongodb_meetings_collection,
            mongodb_agents_collection=settings.mongodb_agents_collection,
            mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        )
        self.summarizer = summarizer or SummarizationService.from_settings(settings)
        self.step_executor = step_executor or PipelineStepExecutor(
            max_attempts=settings.transcript_pipeline_max_attempts,
            backoff_seconds=settings.transcript_pipeline_retry_backoff_seconds,
        )
        self._fetch_body = fetch_body or self._fetch_transcript_body

    def run(self, event: TranscriptReadyEvent) -> TranscriptPipelineResult:
        meeting_id = event.meeting_id
        logger.info("Transcript pipeline started meeting_id=%s", meeting_id)

        meeting = self.step_executor.run("load-meeting", self.load_meeting, meeting_id)
        if meeting is None:
            logger.info("Transcript already processed meeting_id=%s", meeting_id)
            return TranscriptPipelineResult(
                status="noop",
                meeting_id=meeting_id,
                reason="already processed",
            )

        transcript_text = self.step_executor.run(
            "fetch-transcript",
            self.fetch_transcript,
            event.transcript_url,
        )
        safe_transcript = transcript_text[: self.settings.transcript_max_chars]

        summary = self.step_executor.run("ai-summarization", self.summarizer.summarize, safe_transcript)
        self.step_executor.run("finalize-meeting", self.finalize, meeting_id, summary)

        logger.info("Transcript pipeline completed meeting_id=%s", meeting_id)
        return TranscriptPipelineResult(status="completed", meeting_id=meeting_id)

    def load_meeting(self, meeting_id: str) -> Meeting | None:
        document = self.store.get_meeting(meeting_id)
        if not document:
            raise MeetingNotFoundError(f"Meeting {meeting_id} not found")

        meeting = Meeting.from_document(document)
        if meeting.transcript_processed or meeting.status == MeetingStatus.completed:
            return None
        return meeting

    def fetch_transcript(self, transcript_url: str) -> str:
        raw_body = self._fetch_body(transcript_url)
        return extract_transcript_text(raw_body)

    def finalize(self, meeting_id: str, summary: str) -> None:
        self.store.update_fields(
            meeting_id,
            {
                "summary": summary,
                "transcript_processed": True,
                "status": MeetingStatus.completed.value,
                "updated_at": datetime.now(UTC),
            },
        )

    def _fetch_transcript_body(self, transcript_url: str) -> str:
        req = request.Request(transcript_url, method="GET")
        try:
            with request.urlopen(req, timeout=self.settings.transcript_fetch_timeout_seconds) as response:
                raw_body = response.read()
        except error.HTTPError as exc:
            raise TranscriptFetchError(f"Transcript fetch failed: {exc.code}") from exc
        except error.URLError as exc:
            raise TranscriptFetchError(f"Transcript fetch connection error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise TranscriptFetchError("Transcript fetch timed out.") from exc
        return raw_body.decode("utf-8", errors="replace")


def extract_transcript_text(raw_body: str) -> str:
    """Pull transcript text out of an artifact body of unknown format.

    Structured bodies may carry ``text``, ``transcript`` or a list of timed
    ``segments``; JSON-lines bodies carry one segment per line. Anything else
    is treated as plain text.
    """
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return _join_json_lines(raw_body) or raw_body

    if isinstance(parsed, dict):
        for key in ("text", "transcript"):
            value = parsed.get(key)
            if isinstance(value, str) and value:
                return value
        segments_text = _join_segments(parsed.get("segments"))
        if segments_text:
            return segments_text
    elif isinstance(parsed, list):
        segments_text = _join_segments(parsed)
        if segments_text:
            return segments_text
    return raw_body


def _join_segments(segments: Any) -> str | None:
    if not isinstance(segments, list):
        return None
    texts = [
        segment["text"]
        for segment in segments
        if isinstance(segment, dict) and isinstance(segment.get("text"), str)
    ]
    if not texts:
        return None
    return "\n".join(texts)


def _join_json_lines(raw_body: str) -> str | None:
    lines = [line for line in raw_body.splitlines() if line.strip()]
    if len(lines) < 2:
        return None

    parts: list[str] = []
    for line in lines:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(entry, dict) or not isinstance(entry.get("text"), str):
            return None
        speaker = entry.get("speaker_id")
        parts.append(f"{speaker}: {entry['text']}" if speaker else entry["text"])
    return "\n".join(parts)
