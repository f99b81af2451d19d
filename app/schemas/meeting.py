from collections.abc import Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class MeetingStatus(StrEnum):
    upcoming = "upcoming"
    active = "active"
    processing = "processing"
    completed = "completed"
    canceled = "canceled"


class Meeting(BaseModel):
    id: str
    owner_user_id: str
    agent_id: str
    name: str | None = None
    status: MeetingStatus = MeetingStatus.upcoming
    started_at: datetime | None = None
    ended_at: datetime | None = None
    transcript_url: str | None = None
    recording_url: str | None = None
    transcript_processed: bool = False
    summary: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Meeting":
        payload = dict(document)
        payload["id"] = str(payload.pop("_id", payload.get("id", "")))
        return cls.model_validate(payload)


class Agent(BaseModel):
    id: str
    owner_user_id: str
    name: str
    instructions: str | None = None

    @property
    def can_join_calls(self) -> bool:
        return bool(self.instructions and self.instructions.strip())

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Agent":
        payload = dict(document)
        payload["id"] = str(payload.pop("_id", payload.get("id", "")))
        return cls.model_validate(payload)


class TranscriptPipelineResult(BaseModel):
    status: str
    meeting_id: str
    reason: str | None = None


class EndCallResponse(BaseModel):
    status: str = "ok"
    meeting_id: str
    end_call: str
