import logging

from fastapi import HTTPException, status

from app.schemas.meeting import Meeting, TranscriptPipelineResult
from app.services.meeting_store import MeetingStoreError
from app.services.transcript_pipeline import (
    PipelineStepError,
    TranscriptPipeline,
    TranscriptReadyEvent,
)

logger = logging.getLogger(__name__)


class MeetingTranscriptService:
    """Manual re-run of the transcript pipeline for a meeting stuck in processing."""

    def __init__(self, pipeline: TranscriptPipeline) -> None:
        self.pipeline = pipeline

    def reprocess(self, meeting_id: str) -> TranscriptPipelineResult:
        try:
            document = self.pipeline.store.get_meeting(meeting_id)
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

        meeting = Meeting.from_document(document)
        if not meeting.transcript_url:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Meeting has no transcript to process.",
            )

        logger.info("Reprocessing transcript meeting_id=%s", meeting_id)
        try:
            return self.pipeline.run(
                TranscriptReadyEvent(meeting_id=meeting.id, transcript_url=meeting.transcript_url),
            )
        except PipelineStepError as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"Transcript pipeline failed at step {exc.step_name}.",
            ) from exc
