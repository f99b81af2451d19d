import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from time import sleep

from app.core.config import Settings
from app.schemas.meeting import Agent, Meeting, MeetingStatus
from app.schemas.webhook import CallEventType, WebhookStatus
from app.services.call_events import CallEvent
from app.services.meeting_store import MeetingStore, create_meeting_store
from app.services.stream_video_client import (
    RealtimeSessionConfig,
    StreamVideoClient,
    create_stream_video_client,
)
from app.services.transcript_events import TranscriptEventPublisher
from app.services.transcript_pipeline import TranscriptReadyEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecycleOutcome:
    status: WebhookStatus
    outcome: str
    agent_join: str | None = None
    end_call: str | None = None


class MeetingLifecycleService:
    """Applies call-platform events to meeting rows.

    Status changes go through ``MeetingStore.transition_status`` only. The
    request whose conditional update returns the row owns the side effects
    (agent join, end call); every other delivery is a no-op.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        publisher: TranscriptEventPublisher,
        store: MeetingStore | None = None,
        call_client: StreamVideoClient | None = None,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self.settings = settings
        self.publisher = publisher
        self.store = store or create_meeting_store(
            store_name=settings.meetings_store,
            mongodb_uri=settings.mongodb_uri,
            mongodb_db_name=settings.mongodb_db_name,
            mongodb_meetings_collection=settings.mongodb_meetings_collection,
            mongodb_agents_collection=settings.mongodb_agents_collection,
            mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        )
        self.call_client = call_client or create_stream_video_client(settings)
        self._sleep = sleep_fn

    def handle(self, event: CallEvent, meeting_id: str) -> LifecycleOutcome:
        if event.event_type is CallEventType.session_started:
            return self.handle_session_started(event, meeting_id)
        if event.event_type is CallEventType.session_participant_left:
            return self.handle_participant_left(event, meeting_id)
        if event.event_type in (CallEventType.session_ended, CallEventType.call_ended):
            return self.handle_session_ended(event, meeting_id)
        if event.event_type is CallEventType.transcription_ready:
            return self.handle_transcription_ready(event, meeting_id)
        if event.event_type is CallEventType.recording_ready:
            return self.handle_recording_ready(event, meeting_id)

        logger.info(
            "Ignoring unhandled call event meeting_id=%s event_type=%s",
            meeting_id,
            event.raw_event_type,
        )
        return LifecycleOutcome(status=WebhookStatus.ok, outcome="ignored")

    def handle_session_started(self, event: CallEvent, meeting_id: str) -> LifecycleOutcome:
        document = self.store.transition_status(
            meeting_id,
            expected_status=MeetingStatus.upcoming.value,
            target_status=MeetingStatus.active.value,
            updates={"started_at": datetime.now(UTC)},
        )
        if not document:
            logger.info("Session start ignored, meeting not upcoming meeting_id=%s", meeting_id)
            return LifecycleOutcome(status=WebhookStatus.already_active, outcome="noop")

        meeting = Meeting.from_document(document)
        logger.info("Meeting activated meeting_id=%s agent_id=%s", meeting.id, meeting.agent_id)
        agent_join = self._join_agent(meeting, event.call_type, event.call_id or meeting.id)
        return LifecycleOutcome(status=WebhookStatus.ok, outcome="activated", agent_join=agent_join)

    def handle_participant_left(self, event: CallEvent, meeting_id: str) -> LifecycleOutcome:
        document = self.store.get_meeting(meeting_id)
        if not document:
            logger.info("Participant left for unknown meeting meeting_id=%s", meeting_id)
            return LifecycleOutcome(status=WebhookStatus.ok, outcome="noop")

        meeting = Meeting.from_document(document)
        if event.participant_user_id and event.participant_user_id == meeting.agent_id:
            logger.info("Agent left the call, ignoring meeting_id=%s", meeting_id)
            return LifecycleOutcome(status=WebhookStatus.ok, outcome="ignored_agent_left")

        updated = self.store.transition_status(
            meeting_id,
            expected_status=MeetingStatus.active.value,
            target_status=MeetingStatus.processing.value,
            updates={"ended_at": datetime.now(UTC)},
        )
        if not updated:
            logger.info("Participant left ignored, meeting not active meeting_id=%s", meeting_id)
            return LifecycleOutcome(status=WebhookStatus.ok, outcome="noop")

        logger.info("Meeting moved to processing meeting_id=%s", meeting_id)
        end_call = self._end_call(event.call_type, event.call_id or meeting_id, meeting_id)
        return LifecycleOutcome(status=WebhookStatus.ok, outcome="processing", end_call=end_call)

    def handle_session_ended(self, event: CallEvent, meeting_id: str) -> LifecycleOutcome:
        # Local bridge cleanup runs on every delivery, not only for the transition winner.
        self.call_client.close_session(event.call_type, event.call_id or meeting_id)
        updated = self.store.transition_status(
            meeting_id,
            expected_status=MeetingStatus.active.value,
            target_status=MeetingStatus.processing.value,
            updates={"ended_at": datetime.now(UTC)},
        )
        if not updated:
            return LifecycleOutcome(status=WebhookStatus.ok, outcome="noop")
        logger.info("Meeting moved to processing on session end meeting_id=%s", meeting_id)
        return LifecycleOutcome(status=WebhookStatus.ok, outcome="processing")

    def handle_transcription_ready(self, event: CallEvent, meeting_id: str) -> LifecycleOutcome:
        transcript_url = event.transcription_url
        if not transcript_url:
            logger.warning("Transcription ready without url meeting_id=%s", meeting_id)
            return LifecycleOutcome(status=WebhookStatus.ok, outcome="ignored_missing_url")

        matched = self.store.update_fields(meeting_id, {"transcript_url": transcript_url})
        if not matched:
            logger.warning("Transcription ready for unknown meeting meeting_id=%s", meeting_id)
            return LifecycleOutcome(status=WebhookStatus.ok, outcome="noop")

        logger.info("Transcription ready meeting_id=%s transcript_url=%s", meeting_id, transcript_url)
        self.publisher.publish(
            TranscriptReadyEvent(meeting_id=meeting_id, transcript_url=transcript_url),
        )
        return LifecycleOutcome(status=WebhookStatus.ok, outcome="transcript_queued")

    def handle_recording_ready(self, event: CallEvent, meeting_id: str) -> LifecycleOutcome:
        if not event.recording_url:
            logger.warning("Recording ready without url meeting_id=%s", meeting_id)
            return LifecycleOutcome(status=WebhookStatus.ok, outcome="ignored_missing_url")

        matched = self.store.update_fields(meeting_id, {"recording_url": event.recording_url})
        if not matched:
            return LifecycleOutcome(status=WebhookStatus.ok, outcome="noop")
        return LifecycleOutcome(status=WebhookStatus.ok, outcome="recording_stored")

    def _join_agent(self, meeting: Meeting, call_type: str, call_id: str) -> str:
        try:
            agent_document = self.store.get_agent(meeting.agent_id)
            agent = Agent.from_document(agent_document) if agent_document else None
            if not agent or not agent.can_join_calls:
                logger.info(
                    "Agent has no instructions, skipping join meeting_id=%s agent_id=%s",
                    meeting.id,
                    meeting.agent_id,
                )
                return "skipped_no_instructions"

            self.call_client.get_or_create_call(
                call_type,
                call_id,
                created_by_id=agent.id,
                members=[{"user_id": agent.id, "role": self.settings.agent_member_role}],
            )
            # Gives the platform time to register the member before the RTC bridge.
            self._sleep(self.settings.agent_join_delay_seconds)
            self.call_client.connect_agent(
                call_type,
                call_id,
                agent_user_id=agent.id,
                session=self._build_session_config(agent),
            )
        except Exception:
            logger.exception(
                "Agent join failed meeting_id=%s call_cid=%s:%s",
                meeting.id,
                call_type,
                call_id,
            )
            return "failed"

        logger.info("Agent joined call meeting_id=%s call_cid=%s:%s", meeting.id, call_type, call_id)
        return "joined"

    def _end_call(self, call_type: str, call_id: str, meeting_id: str) -> str:
        try:
            self.call_client.end_call(call_type, call_id)
        except Exception:
            logger.warning(
                "End call failed, the call may already be ending meeting_id=%s call_cid=%s:%s",
                meeting_id,
                call_type,
                call_id,
                exc_info=True,
            )
            return "failed"
        return "ended"

    def _build_session_config(self, agent: Agent) -> RealtimeSessionConfig:
        return RealtimeSessionConfig(
            instructions=agent.instructions or "",
            voice=self.settings.realtime_voice,
            turn_detection={
                "type": self.settings.realtime_turn_detection_type,
                "threshold": self.settings.realtime_turn_detection_threshold,
            },
            input_audio_transcription={"model": self.settings.realtime_transcription_model},
        )
