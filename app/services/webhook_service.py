import json
import logging
from typing import Any

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.webhook import WebhookResponse, WebhookStatus
from app.services.call_events import CallEvent, parse_call_event
from app.services.meeting_lifecycle_service import MeetingLifecycleService
from app.services.meeting_store import MeetingStore, MeetingStoreError
from app.services.stream_video_client import StreamVideoClient, create_stream_video_client
from app.services.transcript_events import TranscriptEventPublisher
from app.services.webhook_event_ledger import WebhookEventLedger, create_webhook_event_ledger

logger = logging.getLogger(__name__)


class WebhookService:
    def __init__(
        self,
        settings: Settings,
        *,
        publisher: TranscriptEventPublisher,
        store: MeetingStore | None = None,
        ledger: WebhookEventLedger | None = None,
        call_client: StreamVideoClient | None = None,
        lifecycle: MeetingLifecycleService | None = None,
    ) -> None:
        self.settings = settings
        self.call_client = call_client or create_stream_video_client(settings)
        self.ledger = ledger or create_webhook_event_ledger(
            store_name=settings.meetings_store,
            mongodb_uri=settings.mongodb_uri,
            mongodb_db_name=settings.mongodb_db_name,
            mongodb_collection_name=settings.mongodb_webhook_events_collection,
            mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        )
        self.lifecycle = lifecycle or MeetingLifecycleService(
            settings,
            publisher=publisher,
            store=store,
            call_client=self.call_client,
        )

    def process_webhook(self, raw_body: bytes, signature: str | None) -> WebhookResponse:
        self._validate_signature(raw_body, signature)
        payload = self._parse_payload(raw_body)
        event = parse_call_event(payload, default_call_type=self.settings.stream_default_call_type)

        meeting_id = event.meeting_id
        if not meeting_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="No meetingId",
            )

        if event.event_id and not self._record_event(event):
            logger.info(
                "Duplicate webhook event event_id=%s event_type=%s meeting_id=%s",
                event.event_id,
                event.raw_event_type,
                meeting_id,
            )
            return WebhookResponse(
                status=WebhookStatus.duplicate,
                event_type=event.raw_event_type,
                meeting_id=meeting_id,
                outcome="duplicate",
            )

        try:
            outcome = self.lifecycle.handle(event, meeting_id)
        except MeetingStoreError as exc:
            logger.error(
                "Meeting store failure event_type=%s meeting_id=%s error=%s",
                event.raw_event_type,
                meeting_id,
                exc,
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Unable to update meeting state.",
            ) from exc

        return WebhookResponse(
            status=outcome.status,
            event_type=event.raw_event_type,
            meeting_id=meeting_id,
            outcome=outcome.outcome,
            agent_join=outcome.agent_join,
            end_call=outcome.end_call,
        )

    def _validate_signature(self, raw_body: bytes, signature: str | None) -> None:
        if not self.settings.should_verify_webhook_signature:
            return
        if self.call_client.verify_webhook(raw_body, signature):
            return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    def _parse_payload(self, raw_body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(raw_body or b"")
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Bad JSON",
            ) from exc

        if not isinstance(payload, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Bad JSON",
            )
        return payload

    def _record_event(self, event: CallEvent) -> bool:
        try:
            return self.ledger.record_if_new(event.event_id or "", event.raw_event_type)
        except MeetingStoreError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Unable to record webhook event.",
            ) from exc
