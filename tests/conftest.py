import hashlib
import hmac
import json
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any

import pytest
from fastapi.testclient import TestClient
from httpx import Response

from app.api.dependencies import (
    get_meeting_call_service,
    get_meeting_transcript_service,
    get_webhook_service,
)
from app.core.config import Settings, get_settings
from app.main import app
from app.services.meeting_call_service import MeetingCallService
from app.services.meeting_lifecycle_service import MeetingLifecycleService
from app.services.meeting_store import (
    InMemoryMeetingStore,
    clear_meeting_store_cache,
    create_meeting_store,
)
from app.services.meeting_transcript_service import MeetingTranscriptService
from app.services.security_utils import is_valid_hmac_signature
from app.services.stream_video_client import (
    RealtimeSessionConfig,
    StreamVideoError,
    clear_stream_video_client_cache,
)
from app.services.transcript_events import TranscriptEventPublisher
from app.services.transcript_pipeline import (
    PipelineStepExecutor,
    TranscriptPipeline,
    TranscriptReadyEvent,
)
from app.services.webhook_event_ledger import (
    WebhookEventLedger,
    clear_webhook_event_ledger_cache,
    create_webhook_event_ledger,
)
from app.services.webhook_service import WebhookService

WEBHOOK_SECRET = "stream-test-secret"


class FakeCallClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_on: set[str] = set()
        self._lock = threading.Lock()

    def verify_webhook(self, body: bytes, signature: str | None) -> bool:
        return is_valid_hmac_signature(payload=body, signature=signature, secret=WEBHOOK_SECRET)

    def get_or_create_call(
        self,
        call_type: str,
        call_id: str,
        *,
        created_by_id: str,
        members: Sequence[Mapping[str, str]] = (),
    ) -> dict[str, Any]:
        self._record(
            "get_or_create_call",
            call_type=call_type,
            call_id=call_id,
            created_by_id=created_by_id,
            members=[dict(member) for member in members],
        )
        return {"call": {"id": call_id, "type": call_type}}

    def connect_agent(
        self,
        call_type: str,
        call_id: str,
        *,
        agent_user_id: str,
        session: RealtimeSessionConfig,
    ) -> None:
        self._record(
            "connect_agent",
            call_type=call_type,
            call_id=call_id,
            agent_user_id=agent_user_id,
            session=session.to_session_update(),
        )

    def end_call(self, call_type: str, call_id: str) -> dict[str, Any]:
        self._record("end_call", call_type=call_type, call_id=call_id)
        return {}

    def close_session(self, call_type: str, call_id: str) -> None:
        self._record("close_session", call_type=call_type, call_id=call_id)

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.calls]

    def _record(self, name: str, **kwargs: Any) -> None:
        with self._lock:
            self.calls.append((name, kwargs))
        if name in self.fail_on:
            raise StreamVideoError(f"{name} failed")


class RecordingPublisher(TranscriptEventPublisher):
    def __init__(self) -> None:
        self.events: list[TranscriptReadyEvent] = []

    def publish(self, event: TranscriptReadyEvent) -> None:
        self.events.append(event)


@pytest.fixture(autouse=True)
def memory_backends(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("MEETINGS_STORE", "memory")
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("STREAM_API_KEY", "stream-test-key")
    monkeypatch.setenv("STREAM_API_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("SARVAM_API_KEY", "")
    monkeypatch.setenv("TRANSCRIPT_PIPELINE_RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("AGENT_JOIN_DELAY_SECONDS", "0")
    _clear_caches()
    yield
    app.dependency_overrides.clear()
    _clear_caches()


def _clear_caches() -> None:
    get_settings.cache_clear()
    clear_meeting_store_cache()
    clear_webhook_event_ledger_cache()
    clear_stream_video_client_cache()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def store(settings: Settings) -> InMemoryMeetingStore:
    meeting_store = create_meeting_store(
        store_name=settings.meetings_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_meetings_collection=settings.mongodb_meetings_collection,
        mongodb_agents_collection=settings.mongodb_agents_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )
    assert isinstance(meeting_store, InMemoryMeetingStore)
    return meeting_store


@pytest.fixture
def ledger(settings: Settings) -> WebhookEventLedger:
    return create_webhook_event_ledger(
        store_name=settings.meetings_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_webhook_events_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@pytest.fixture
def call_client() -> FakeCallClient:
    return FakeCallClient()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def lifecycle(
    settings: Settings,
    store: InMemoryMeetingStore,
    call_client: FakeCallClient,
    publisher: RecordingPublisher,
) -> MeetingLifecycleService:
    return MeetingLifecycleService(
        settings,
        publisher=publisher,
        store=store,
        call_client=call_client,  # type: ignore[arg-type]
        sleep_fn=lambda _: None,
    )


@pytest.fixture
def webhook_service(
    settings: Settings,
    store: InMemoryMeetingStore,
    ledger: WebhookEventLedger,
    call_client: FakeCallClient,
    publisher: RecordingPublisher,
    lifecycle: MeetingLifecycleService,
) -> WebhookService:
    return WebhookService(
        settings,
        publisher=publisher,
        store=store,
        ledger=ledger,
        call_client=call_client,  # type: ignore[arg-type]
        lifecycle=lifecycle,
    )


@pytest.fixture
def client(webhook_service: WebhookService) -> TestClient:
    app.dependency_overrides[get_webhook_service] = lambda: webhook_service
    return TestClient(app)


@pytest.fixture
def transcript_bodies() -> dict[str, str]:
    return {}


@pytest.fixture
def summaries() -> list[str]:
    return []


@pytest.fixture
def pipeline(
    settings: Settings,
    store: InMemoryMeetingStore,
    transcript_bodies: dict[str, str],
    summaries: list[str],
) -> TranscriptPipeline:
    class _EchoSummarizer:
        def summarize(self, transcript_text: str) -> str:
            summaries.append(transcript_text)
            return f"summary of {len(transcript_text)} chars"

    return TranscriptPipeline(
        settings,
        store=store,
        summarizer=_EchoSummarizer(),  # type: ignore[arg-type]
        step_executor=PipelineStepExecutor(max_attempts=3, backoff_seconds=0),
        fetch_body=lambda url: transcript_bodies[url],
    )


@pytest.fixture
def reprocess_client(pipeline: TranscriptPipeline) -> TestClient:
    app.dependency_overrides[get_meeting_transcript_service] = lambda: MeetingTranscriptService(
        pipeline,
    )
    return TestClient(app)


@pytest.fixture
def call_control_client(
    settings: Settings,
    store: InMemoryMeetingStore,
    call_client: FakeCallClient,
) -> TestClient:
    app.dependency_overrides[get_meeting_call_service] = lambda: MeetingCallService(
        settings,
        store=store,
        call_client=call_client,  # type: ignore[arg-type]
    )
    return TestClient(app)


@pytest.fixture
def seed_meeting(store: InMemoryMeetingStore) -> Callable[..., None]:
    def _seed(
        *,
        meeting_id: str = "m1",
        agent_id: str = "agent-1",
        status: str = "upcoming",
        instructions: str | None = "You are a friendly interview coach.",
        **fields: Any,
    ) -> None:
        store.save_agent(
            {
                "id": agent_id,
                "owner_user_id": "user-1",
                "name": "Coach",
                "instructions": instructions,
            },
        )
        store.save_meeting(
            {
                "id": meeting_id,
                "owner_user_id": "user-1",
                "agent_id": agent_id,
                "name": "Weekly sync",
                "status": status,
                **fields,
            },
        )

    return _seed


def sign_body(raw_body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


@pytest.fixture
def signer() -> Callable[..., str]:
    return sign_body


@pytest.fixture
def post_webhook(client: TestClient) -> Callable[..., Response]:
    def _post(
        payload: Mapping[str, Any] | bytes,
        *,
        secret: str = WEBHOOK_SECRET,
        path: str = "/api/webhooks/stream",
    ) -> Response:
        raw_body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        return client.post(
            path,
            content=raw_body,
            headers={"Content-Type": "application/json", "X-Signature": sign_body(raw_body, secret)},
        )

    return _post
