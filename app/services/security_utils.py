from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta
from typing import Any

JWT_HEADER = {"alg": "HS256", "typ": "JWT"}


def is_valid_hmac_signature(*, payload: bytes, signature: str | None, secret: str) -> bool:
    if not signature or not secret:
        return False
    provided_signature = signature.strip()
    if provided_signature.startswith("sha256="):
        provided_signature = provided_signature.split("=", maxsplit=1)[1].strip()
    if not provided_signature:
        return False

    computed_signature = hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(computed_signature, provided_signature.lower())


def create_jwt(
    *,
    claims: dict[str, Any],
    secret_key: str,
    ttl_seconds: int | None = None,
) -> str:
    issued_at = datetime.now(UTC)
    payload: dict[str, Any] = {**claims, "iat": int(issued_at.timestamp())}
    if ttl_seconds:
        payload["exp"] = int((issued_at + timedelta(seconds=ttl_seconds)).timestamp())

    header_segment = _b64url_encode(_compact_json(JWT_HEADER))
    payload_segment = _b64url_encode(_compact_json(payload))
    signing_input = f"{header_segment}.{payload_segment}".encode("ascii")
    signature = hmac.new(
        secret_key.encode("utf-8"),
        signing_input,
        hashlib.sha256,
    ).digest()
    return f"{header_segment}.{payload_segment}.{_b64url_encode(signature)}"


def create_server_token(secret_key: str) -> str:
    return create_jwt(claims={"server": True}, secret_key=secret_key)


def create_user_token(*, user_id: str, secret_key: str, ttl_seconds: int = 60 * 60) -> str:
    return create_jwt(
        claims={"user_id": user_id},
        secret_key=secret_key,
        ttl_seconds=ttl_seconds,
    )


def _compact_json(value: dict[str, Any]) -> bytes:
    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")

