import logging

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.meeting import EndCallResponse
from app.services.meeting_store import MeetingStore, MeetingStoreError, create_meeting_store
from app.services.stream_video_client import (
    StreamVideoClient,
    StreamVideoError,
    create_stream_video_client,
)

logger = logging.getLogger(__name__)


class MeetingCallService:
    """Host-side call control for a meeting's live call.

    Ending a call does not move the meeting; the platform's ``call.ended``
    and ``call.session_ended`` webhooks drive that transition.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: MeetingStore | None = None,
        call_client: StreamVideoClient | None = None,
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
        self.call_client = call_client or create_stream_video_client(settings)

    def end_call(self, meeting_id: str) -> EndCallResponse:
        try:
            document = self.store.get_meeting(meeting_id)
        except MeetingStoreError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Unable to query meeting storage.",
            ) from exc

        if not document:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Meeting not found.",
            )

        call_type = self.settings.stream_default_call_type
        try:
            self.call_client.end_call(call_type, meeting_id)
        except StreamVideoError as exc:
            # Stream rejects mark_ended for a call that is already over.
            logger.info(
                "End call request ignored meeting_id=%s call_cid=%s:%s error=%s",
                meeting_id,
                call_type,
                meeting_id,
                exc,
            )
            return EndCallResponse(meeting_id=meeting_id, end_call="already_ended")

        logger.info("Call ended by host meeting_id=%s call_cid=%s:%s", meeting_id, call_type, meeting_id)
        return EndCallResponse(meeting_id=meeting_id, end_call="ended")
