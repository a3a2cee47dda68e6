"""Webhook request authentication."""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Mapping

import structlog

from signalgate.config.settings import AuthConfig
from signalgate.errors import AuthenticationFailure, InternalError
from signalgate.models import AuthMode

log = structlog.get_logger(__name__)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def sign(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body``, as senders put in the signature header."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class SignatureVerifier:
    """HMAC-SHA256 over the exact received bytes, with a body-secret fallback.

    The fallback only applies when no signature header is present; a present
    but wrong header always fails.
    """

    def __init__(self, config: AuthConfig, secret: str) -> None:
        self.config = config
        self.enabled = config.enabled
        self.header_name = config.header_name
        self._secret = secret

    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        payload: Mapping[str, Any] | None = None,
    ) -> AuthMode:
        if not self.enabled:
            return AuthMode.DISABLED
        if not self._secret:
            log.error("webhook_secret_missing")
            raise InternalError("Webhook authentication is enabled but no secret is configured")

        provided = _header(headers, self.header_name)
        if provided is not None:
            provided = provided.strip()
            if provided.lower().startswith("sha256="):
                provided = provided[len("sha256="):]
            expected = sign(self._secret, raw_body)
            if hmac.compare_digest(expected.encode(), provided.lower().encode()):
                return AuthMode.HMAC
            raise AuthenticationFailure("Invalid webhook signature", auth_mode=AuthMode.NONE.value)

        if self.config.allow_body_secret and payload is not None:
            candidate = payload.get("secret")
            if isinstance(candidate, str) and hmac.compare_digest(
                candidate.encode("utf-8"), self._secret.encode("utf-8")
            ):
                return AuthMode.BODY_SECRET
            if candidate is not None:
                raise AuthenticationFailure("Invalid webhook secret", auth_mode=AuthMode.NONE.value)

        raise AuthenticationFailure("Missing webhook signature", auth_mode=AuthMode.NONE.value)
