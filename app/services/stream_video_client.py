import json
import logging
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from http.client import RemoteDisconnected
from time import sleep
from typing import Any
from urllib import error, parse, request

from app.core.config import Settings
from app.services.security_utils import (
    create_server_token,
    create_user_token,
    is_valid_hmac_signature,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class StreamVideoError(Exception):
    pass


@dataclass(frozen=True)
class RealtimeSessionConfig:
    instructions: str
    voice: str = "alloy"
    turn_detection: dict[str, Any] = field(
        default_factory=lambda: {"type": "server_vad", "threshold": 0.5},
    )
    input_audio_transcription: dict[str, Any] = field(
        default_factory=lambda: {"model": "whisper-1"},
    )

    def to_session_update(self) -> dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "instructions": self.instructions,
                "voice": self.voice,
                "turn_detection": dict(self.turn_detection),
                "input_audio_transcription": dict(self.input_audio_transcription),
            },
        }


class StreamVideoClient:
    """Call-control commands against the Stream Video server API."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        api_url: str = "https://video.stream-io-api.com",
        timeout_seconds: float = 10.0,
        openai_api_key: str = "",
        max_attempts: int = 3,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.openai_api_key = openai_api_key
        self.max_attempts = max(max_attempts, 1)
        self._agent_sessions: dict[str, Any] = {}
        self._sessions_lock = threading.Lock()

    def verify_webhook(self, body: bytes, signature: str | None) -> bool:
        return is_valid_hmac_signature(
            payload=body,
            signature=signature,
            secret=self.api_secret,
        )

    def get_or_create_call(
        self,
        call_type: str,
        call_id: str,
        *,
        created_by_id: str,
        members: Sequence[Mapping[str, str]] = (),
    ) -> dict[str, Any]:
        payload = {
            "data": {
                "created_by_id": created_by_id,
                "members": [dict(member) for member in members],
            },
        }
        return self._post(self._call_path(call_type, call_id), payload)

    def end_call(self, call_type: str, call_id: str) -> dict[str, Any]:
        try:
            return self._post(f"{self._call_path(call_type, call_id)}/mark_ended", {})
        finally:
            self.close_session(call_type, call_id)

    def connect_agent(
        self,
        call_type: str,
        call_id: str,
        *,
        agent_user_id: str,
        session: RealtimeSessionConfig,
    ) -> None:
        """Bridge an AI voice session into the call as ``agent_user_id``.

        The websocket stays open for as long as the agent should remain in
        the call. A daemon thread keeps reading its events so keepalive pings
        are answered. It is closed by ``end_call``, ``close_session`` or ``close``.
        """
        from websockets.exceptions import WebSocketException
        from websockets.sync.client import connect

        if not self.openai_api_key:
            raise StreamVideoError("OPENAI_API_KEY is required to connect the realtime agent.")

        cid = _call_cid(call_type, call_id)
        url = self._connect_agent_url(call_type, call_id)
        headers = {
            "Authorization": create_user_token(user_id=agent_user_id, secret_key=self.api_secret),
            "Stream-Auth-Type": "jwt",
            "X-OpenAI-Api-Key": self.openai_api_key,
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            connection = connect(
                url,
                additional_headers=headers,
                open_timeout=self.timeout_seconds,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise StreamVideoError(f"Realtime agent connection failed for call {cid}: {exc}") from exc

        try:
            connection.send(json.dumps(session.to_session_update()))
        except (OSError, WebSocketException) as exc:
            connection.close()
            raise StreamVideoError(f"Realtime session update failed for call {cid}: {exc}") from exc

        with self._sessions_lock:
            previous = self._agent_sessions.pop(cid, None)
            self._agent_sessions[cid] = connection
        if previous is not None:
            previous.close()
        threading.Thread(
            target=self._drain_agent_session,
            args=(cid, connection),
            name=f"agent-session-{cid}",
            daemon=True,
        ).start()
        logger.info("Realtime agent connected call_cid=%s agent_user_id=%s", cid, agent_user_id)

    def has_agent_session(self, call_type: str, call_id: str) -> bool:
        with self._sessions_lock:
            return _call_cid(call_type, call_id) in self._agent_sessions

    def close(self) -> None:
        with self._sessions_lock:
            sessions = list(self._agent_sessions.values())
            self._agent_sessions.clear()
        for connection in sessions:
            connection.close()

    def close_session(self, call_type: str, call_id: str) -> None:
        cid = _call_cid(call_type, call_id)
        with self._sessions_lock:
            connection = self._agent_sessions.pop(cid, None)
        if connection is not None:
            connection.close()
            logger.info("Realtime agent disconnected call_cid=%s", cid)

    def _drain_agent_session(self, cid: str, connection: Any) -> None:
        from websockets.exceptions import ConnectionClosed

        try:
            for message in connection:
                _log_realtime_event(cid, message)
        except ConnectionClosed as exc:
            logger.warning("Realtime agent connection dropped call_cid=%s error=%s", cid, exc)
        finally:
            with self._sessions_lock:
                if self._agent_sessions.get(cid) is connection:
                    del self._agent_sessions[cid]

    def _call_path(self, call_type: str, call_id: str) -> str:
        return f"/api/v2/video/call/{parse.quote(call_type, safe='')}/{parse.quote(call_id, safe='')}"

    def _connect_agent_url(self, call_type: str, call_id: str) -> str:
        query = parse.urlencode(
            {
                "call_type": call_type,
                "call_id": call_id,
                "api_key": self.api_key,
            },
        )
        base_url = self.api_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{base_url}/video/connect_agent?{query}"

    def _post(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise StreamVideoError("STREAM_API_KEY and STREAM_API_SECRET must be configured.")

        query = parse.urlencode({"api_key": self.api_key})
        req = request.Request(
            f"{self.api_url}{path}?{query}",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": create_server_token(self.api_secret),
                "Stream-Auth-Type": "jwt",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )

        response_body: bytes | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    response_body = response.read()
                break
            except TimeoutError as exc:
                if attempt >= self.max_attempts:
                    raise StreamVideoError(f"Stream API request timed out: {path}") from exc
            except RemoteDisconnected as exc:
                if attempt >= self.max_attempts:
                    raise StreamVideoError(
                        "Stream API connection was closed before sending a response.",
                    ) from exc
            except error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="ignore")
                if exc.code not in RETRYABLE_STATUS_CODES or attempt >= self.max_attempts:
                    raise StreamVideoError(
                        f"Stream API HTTP {exc.code}: {body or 'empty response body'}",
                    ) from exc
            except error.URLError as exc:
                if attempt >= self.max_attempts:
                    raise StreamVideoError(f"Stream API connection error: {exc.reason}") from exc

            sleep(0.5 * attempt)

        if response_body is None:
            raise StreamVideoError("Stream API request failed after multiple attempts.")
        if not response_body.strip():
            return {}

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise StreamVideoError("Stream API returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise StreamVideoError("Stream API response is not a JSON object.")
        return parsed_body


def _call_cid(call_type: str, call_id: str) -> str:
    return f"{call_type}:{call_id}"


def _log_realtime_event(cid: str, message: str | bytes) -> None:
    if isinstance(message, bytes):
        return
    try:
        event = json.loads(message)
    except json.JSONDecodeError:
        logger.debug("Realtime agent sent non-JSON frame call_cid=%s", cid)
        return
    if not isinstance(event, dict):
        return
    event_type = event.get("type")
    if event_type == "error":
        logger.warning("Realtime agent error call_cid=%s error=%s", cid, event.get("error"))
    else:
        logger.debug("Realtime agent event call_cid=%s type=%s", cid, event_type)


def create_stream_video_client(settings: Settings) -> StreamVideoClient:
    return _create_stream_video_client_cached(
        api_key=settings.stream_api_key,
        api_secret=settings.stream_api_secret,
        api_url=settings.stream_api_url,
        timeout_seconds=settings.stream_api_timeout_seconds,
        openai_api_key=settings.openai_api_key,
    )


@lru_cache
def _create_stream_video_client_cached(
    *,
    api_key: str,
    api_secret: str,
    api_url: str,
    timeout_seconds: float,
    openai_api_key: str,
) -> StreamVideoClient:
    return StreamVideoClient(
        api_key=api_key,
        api_secret=api_secret,
        api_url=api_url,
        timeout_seconds=timeout_seconds,
        openai_api_key=openai_api_key,
    )


def clear_stream_video_client_cache() -> None:
    _create_stream_video_client_cached.cache_clear()
