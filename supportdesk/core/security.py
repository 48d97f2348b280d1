from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from supportdesk.domain.enums import UserRole

TOKEN_VERSION = 2


@dataclass(frozen=True, slots=True)
class IdentityClaims:
    user_id: UUID
    role: UserRole
    company_id: UUID | None
    expires_at: datetime

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.AGENT, UserRole.MANAGER)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(raw: str) -> bytes:
    padded = raw + ("=" * (-len(raw) % 4))
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _sign(payload_segment: str, secret: str) -> bytes:
    return hmac.new(
        secret.encode("utf-8"),
        payload_segment.encode("utf-8"),
        hashlib.sha256,
    ).digest()


def create_access_token(
    *,
    user_id: UUID,
    role: UserRole,
    company_id: UUID | None,
    secret: str,
    ttl_minutes: int,
) -> tuple[str, datetime]:
    now = datetime.now(UTC)
    expires_at = now + timedelta(minutes=ttl_minutes)
    payload = {
        "v": TOKEN_VERSION,
        "uid": str(user_id),
        "role": role.value,
        "cid": str(company_id) if company_id is not None else None,
        "exp": int(expires_at.timestamp()),
        "iat": int(now.timestamp()),
    }

    payload_raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode(
        "utf-8"
    )
    payload_segment = _b64url_encode(payload_raw)
    token = f"{payload_segment}.{_b64url_encode(_sign(payload_segment, secret))}"
    return token, expires_at


def decode_access_token(token: str, secret: str) -> IdentityClaims:
    try:
        payload_segment, signature_segment = token.split(".", 1)
    except ValueError as exc:
        raise ValueError("Malformed token") from exc

    try:
        actual_signature = _b64url_decode(signature_segment)
    except (ValueError, TypeError) as exc:
        raise ValueError("Malformed token signature") from exc

    if not hmac.compare_digest(_sign(payload_segment, secret), actual_signature):
        raise ValueError("Invalid token signature")

    try:
        payload = json.loads(_b64url_decode(payload_segment).decode("utf-8"))
    except (ValueError, TypeError) as exc:
        raise ValueError("Malformed token payload") from exc

    if not isinstance(payload, dict):
        raise ValueError("Malformed token payload")
    if payload.get("v") != TOKEN_VERSION:
        raise ValueError("Unsupported token version")

    try:
        user_id = UUID(str(payload["uid"]))
        role = UserRole(payload["role"])
        raw_company_id = payload.get("cid")
        company_id = UUID(str(raw_company_id)) if raw_company_id else None
        expires_at = datetime.fromtimestamp(int(payload["exp"]), UTC)
    except (KeyError, ValueError, TypeError) as exc:
        raise ValueError("Malformed token payload") from exc

    if expires_at <= datetime.now(UTC):
        raise ValueError("Token expired")

    return IdentityClaims(
        user_id=user_id,
        role=role,
        company_id=company_id,
        expires_at=expires_at,
    )


class TokenAuthenticator:
    """Verifies handshake and bearer credentials into identity claims."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def authenticate(self, credential: str | None) -> IdentityClaims:
        if credential is None or not credential.strip():
            raise ValueError("Authentication required")
        token = credential.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        return decode_access_token(token, self._secret)
