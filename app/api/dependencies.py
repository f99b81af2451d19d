from fastapi import Depends, Request

from app.core.config import get_settings
from app.services.meeting_call_service import MeetingCallService
from app.services.meeting_transcript_service import MeetingTranscriptService
from app.services.transcript_events import (
    TranscriptEventPublisher,
    create_transcript_event_publisher,
)
from app.services.transcript_pipeline import TranscriptPipeline
from app.services.webhook_service import WebhookService


def get_transcript_event_publisher(request: Request) -> TranscriptEventPublisher:
    publisher = getattr(request.app.state, "transcript_event_publisher", None)
    if publisher is None:
        publisher = create_transcript_event_publisher(get_settings())
        request.app.state.transcript_event_publisher = publisher
    return publisher


def get_webhook_service(
    publisher: TranscriptEventPublisher = Depends(get_transcript_event_publisher),
) -> WebhookService:
    return WebhookService(get_settings(), publisher=publisher)


def get_meeting_transcript_service() -> MeetingTranscriptService:
    return MeetingTranscriptService(TranscriptPipeline(get_settings()))


def get_meeting_call_service() -> MeetingCallService:
    return MeetingCallService(get_settings())
