import pytest

from signalgate.config.settings import AuthConfig
from signalgate.errors import AuthenticationFailure, InternalError
from signalgate.gateway.signature import SignatureVerifier, sign
from signalgate.models import AuthMode

SECRET = "shh"
BODY = b'{"symbol":"BTCUSD","action":"buy","quantity":1}'


def _verifier(**overrides) -> SignatureVerifier:
    return SignatureVerifier(AuthConfig(**overrides), SECRET)


def test_valid_header_signature() -> None:
    headers = {"X-TradingView-Signature": sign(SECRET, BODY)}
    assert _verifier().verify(BODY, headers) == AuthMode.HMAC


def test_header_lookup_is_case_insensitive_and_accepts_prefix() -> None:
    headers = {"x-tradingview-signature": "sha256=" + sign(SECRET, BODY).upper()}
    assert _verifier().verify(BODY, headers) == AuthMode.HMAC


def test_signature_covers_exact_bytes() -> None:
    headers = {"X-TradingView-Signature": sign(SECRET, BODY)}
    with pytest.raises(AuthenticationFailure):
        _verifier().verify(BODY + b" ", headers)


def test_wrong_header_does_not_fall_back_to_body_secret() -> None:
    headers = {"X-TradingView-Signature": "deadbeef"}
    with pytest.raises(AuthenticationFailure):
        _verifier().verify(BODY, headers, {"secret": SECRET})


def test_body_secret_fallback() -> None:
    verifier = _verifier()
    assert verifier.verify(BODY, {}, {"secret": SECRET}) == AuthMode.BODY_SECRET
    with pytest.raises(AuthenticationFailure):
        verifier.verify(BODY, {}, {"secret": "nope"})


def test_body_secret_can_be_turned_off() -> None:
    with pytest.raises(AuthenticationFailure):
        _verifier(allow_body_secret=False).verify(BODY, {}, {"secret": SECRET})


def test_missing_signature() -> None:
    with pytest.raises(AuthenticationFailure) as exc:
        _verifier().verify(BODY, {}, {})
    assert exc.value.http_status == 401


def test_disabled_auth_accepts_anything() -> None:
    assert _verifier(enabled=False).verify(BODY, {}) == AuthMode.DISABLED


def test_enabled_without_secret_is_internal_error() -> None:
    verifier = SignatureVerifier(AuthConfig(), "")
    with pytest.raises(InternalError):
        verifier.verify(BODY, {"X-TradingView-Signature": "x"})
