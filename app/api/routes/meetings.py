from fastapi import APIRouter, Depends

from app.api.dependencies import get_meeting_call_service, get_meeting_transcript_service
from app.schemas.meeting import EndCallResponse, TranscriptPipelineResult
from app.services.meeting_call_service import MeetingCallService
from app.services.meeting_transcript_service import MeetingTranscriptService

router = APIRouter(prefix="/meetings", tags=["meetings"])


@router.post(
    "/{meeting_id}/transcript/reprocess",
    response_model=TranscriptPipelineResult,
)
def reprocess_meeting_transcript(
    meeting_id: str,
    service: MeetingTranscriptService = Depends(get_meeting_transcript_service),
) -> TranscriptPipelineResult:
    return service.reprocess(meeting_id)


@router.post("/{meeting_id}/end-call", response_model=EndCallResponse)
def end_meeting_call(
    meeting_id: str,
    service: MeetingCallService = Depends(get_meeting_call_service),
) -> EndCallResponse:
    return service.end_call(meeting_id)
