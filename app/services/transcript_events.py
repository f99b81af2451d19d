from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from app.core.config import Settings
from app.schemas.meeting import TranscriptPipelineResult
from app.services.transcript_pipeline import (
    PipelineStepError,
    TranscriptPipeline,
    TranscriptReadyEvent,
)

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[], TranscriptPipeline]


class TranscriptEventPublisher(ABC):
    @abstractmethod
    def publish(self, event: TranscriptReadyEvent) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        return None


def run_transcript_pipeline(
    pipeline: TranscriptPipeline,
    event: TranscriptReadyEvent,
) -> TranscriptPipelineResult | None:
    try:
        return pipeline.run(event)
    except PipelineStepError as exc:
        logger.error(
            "Transcript pipeline run failed meeting_id=%s step=%s attempts=%s; "
            "meeting stays in processing",
            event.meeting_id,
            exc.step_name,
            exc.attempts,
        )
        return None


class InlineTranscriptEventPublisher(TranscriptEventPublisher):
    def __init__(self, pipeline_factory: PipelineFactory) -> None:
        self._pipeline_factory = pipeline_factory

    def publish(self, event: TranscriptReadyEvent) -> None:
        logger.info("Publishing %s inline meeting_id=%s", event.name, event.meeting_id)
        run_transcript_pipeline(self._pipeline_factory(), event)


class BackgroundTranscriptEventPublisher(TranscriptEventPublisher):
    def __init__(self, pipeline_factory: PipelineFactory, max_workers: int = 4) -> None:
        self._pipeline_factory = pipeline_factory
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="transcript-pipeline",
        )

    def publish(self, event: TranscriptReadyEvent) -> None:
        logger.info("Publishing %s meeting_id=%s", event.name, event.meeting_id)
        future = self._executor.submit(run_transcript_pipeline, self._pipeline_factory(), event)
        future.add_done_callback(_log_unexpected_failure)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def _log_unexpected_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Transcript pipeline crashed", exc_info=exc)


def create_transcript_event_publisher(settings: Settings) -> TranscriptEventPublisher:
    def pipeline_factory() -> TranscriptPipeline:
        return TranscriptPipeline(settings)

    if settings.transcript_pipeline_mode == "inline":
        return InlineTranscriptEventPublisher(pipeline_factory)
    return BackgroundTranscriptEventPublisher(pipeline_factory)
