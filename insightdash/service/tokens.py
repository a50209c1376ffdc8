from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from insightdash.config import Settings
from insightdash.logging import get_logger
from insightdash.service.errors import InvalidTokenError, SubjectNotFoundError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class TokenService:
    """Issues and verifies the short-lived access / long-lived refresh pair.

    Both tokens are stateless HS256 JWTs signed with separate secrets. The
    refresh token carries ``type="refresh"``; the access token carries
    ``token_type="access"`` so neither can be replayed as the other even if
    the secrets were ever configured identically.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._access_key = settings.jwt_access_secret.encode()
        self._refresh_key = settings.jwt_refresh_secret.encode()

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_max_age

    def issue_token_pair(self, subject_id: str) -> TokenPair:
        now = int(self._clock())
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "sub": subject_id,
            "iat": now,
            "exp": now + self.access_ttl_seconds,
            "jti": str(uuid.uuid4()),
            "token_type": ACCESS_TOKEN_TYPE,
        }
        refresh_payload = {
            "iss": self.settings.jwt_issuer,
            "sub": subject_id,
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
            "jti": str(uuid.uuid4()),
            "type": REFRESH_TOKEN_TYPE,
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload, self._access_key),
            refresh_token=self._encode_jwt(refresh_payload, self._refresh_key),
        )

    def verify_access_token(self, token: str) -> str:
        payload = self._decode_jwt(token, self._access_key)
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenError("wrong_type")
        return self._subject(payload)

    def verify_refresh_token(self, token: str) -> str:
        payload = self._decode_jwt(token, self._refresh_key)
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise InvalidTokenError("wrong_type")
        return self._subject(payload)

    def refresh(self, refresh_token: str, lookup: Callable[[str], Any]) -> TokenPair:
        """Exchange a valid refresh token for a brand-new pair.

        ``lookup`` resolves the subject; a falsy result means the identity no
        longer exists and no pair is issued.
        """
        subject_id = self.verify_refresh_token(refresh_token)
        if not lookup(subject_id):
            raise SubjectNotFoundError("user not found", detail={"user_id": subject_id})
        return self.issue_token_pair(subject_id)

    def _subject(self, payload: dict[str, Any]) -> str:
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("missing_subject")
        return subject

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: bytes) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, key)}"

    def _decode_jwt(self, token: Optional[str], key: bytes) -> dict[str, Any]:
        if not token or not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed")

        # Pin the algorithm; "none" or RS/HS confusion never reaches the HMAC check
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed")
        if not isinstance(header, dict):
            raise InvalidTokenError("malformed")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("bad_algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("bad_signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("wrong_issuer")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("malformed")
        if self._clock() >= exp_ts + self.settings.jwt_leeway_seconds:
            raise InvalidTokenError("expired")
        return payload
