from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.schemas.webhook import CallEventType


@dataclass(frozen=True)
class CallEvent:
    event_type: CallEventType
    raw_event_type: str | None
    event_id: str | None
    meeting_id: str | None
    call_type: str
    call_id: str | None
    participant_user_id: str | None = None
    transcription_url: str | None = None
    recording_url: str | None = None


def parse_call_event(payload: Mapping[str, Any], default_call_type: str = "default") -> CallEvent:
    raw_event_type = _extract_first_string(payload, ("type",))
    call_cid = _extract_first_string(payload, ("call_cid", "call.cid"))
    cid_type, cid_id = _split_cid(call_cid)

    meeting_id = extract_meeting_id(payload)
    call_id = _extract_first_string(payload, ("call.id",)) or cid_id or meeting_id
    call_type = _extract_first_string(payload, ("call.type",)) or cid_type or default_call_type

    return CallEvent(
        event_type=CallEventType.parse(raw_event_type),
        raw_event_type=raw_event_type,
        event_id=_extract_first_string(payload, ("id",)),
        meeting_id=meeting_id,
        call_type=call_type,
        call_id=call_id,
        participant_user_id=_extract_first_string(
            payload,
            (
                "participant.user_id",
                "participant.user.id",
                "user.id",
            ),
        ),
        transcription_url=_extract_first_string(
            payload,
            ("transcription.url", "call_transcription.url"),
        ),
        recording_url=_extract_first_string(
            payload,
            ("recording.url", "call_recording.url"),
        ),
    )


def extract_meeting_id(payload: Mapping[str, Any]) -> str | None:
    """Canonical meeting id from any of the payload shapes the platform sends.

    ``call.id`` is used as is, ``call_cid`` has the form ``<type>:<id>`` and
    ``call.custom.meetingId`` is the metadata echoed back from call creation.
    """
    raw_id = _extract_first_string(
        payload,
        (
            "call.id",
            "call_cid",
            "call.custom.meetingId",
            "call.custom.meeting_id",
        ),
    )
    if raw_id and ":" in raw_id:
        _, _, raw_id = raw_id.partition(":")
        raw_id = raw_id.strip()
    return raw_id or None


def _split_cid(call_cid: str | None) -> tuple[str | None, str | None]:
    if not call_cid or ":" not in call_cid:
        return None, None
    call_type, _, call_id = call_cid.partition(":")
    return call_type.strip() or None, call_id.strip() or None


def _extract_first_string(payload: Mapping[str, Any], paths: tuple[str, ...]) -> str | None:
    for path in paths:
        value = _extract_path(payload, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
    return None


def _extract_path(payload: Mapping[str, Any], path: str) -> Any:
    value: Any = payload
    for segment in path.split("."):
        if not isinstance(value, Mapping):
            return None
        if segment not in value:
            return None
        value = value[segment]
    return value
