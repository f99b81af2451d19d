from enum import StrEnum

from pydantic import BaseModel


class CallEventType(StrEnum):
    session_started = "call.session_started"
    session_participant_left = "call.session_participant_left"
    session_ended = "call.session_ended"
    call_ended = "call.ended"
    transcription_ready = "call.transcription_ready"
    recording_ready = "call.recording_ready"
    unknown = "unknown"

    @classmethod
    def parse(cls, raw_value: str | None) -> "CallEventType":
        if not raw_value:
            return cls.unknown
        try:
            return cls(raw_value.strip())
        except ValueError:
            return cls.unknown


class WebhookStatus(StrEnum):
    ok = "ok"
    duplicate = "duplicate"
    already_active = "already_active"


class WebhookResponse(BaseModel):
    status: WebhookStatus = WebhookStatus.ok
    event_type: str | None = None
    meeting_id: str | None = None
    outcome: str | None = None
    agent_join: str | None = None
    end_call: str | None = None
