"""Unit tests for session token issuing and verification."""

import json
from datetime import timedelta

import pytest

from korella.service.errors import AuthenticationError
from korella.service.tokens import (
    TokenError,
    TokenErrorCode,
    TokenLifetime,
    TokenService,
    _encode_segment,
    extract_from_header,
    is_expired,
    parse_payload,
    time_remaining,
)
from korella.storage.models import User


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


@pytest.fixture
def user():
    return User(id="user-1", email="ada@example.com", full_name="Ada Lovelace", subscription_tier="pro")


class TestIssueAndVerify:
    def test_default_lifetime_round_trip(self, tokens, user, clock):
        token, expires_at = tokens.issue(user, session_id="sess-1")

        assert expires_at == clock() + timedelta(days=3)
        payload = tokens.verify(token)
        assert payload.user_id == "user-1"
        assert payload.email == "ada@example.com"
        assert payload.name == "Ada Lovelace"
        assert payload.subscription_tier == "pro"
        assert payload.session_id == "sess-1"
        assert payload.remember_me is False
        assert tokens.classify(payload) is TokenLifetime.DEFAULT

    def test_remember_me_extends_lifetime(self, tokens, user, clock):
        token, expires_at = tokens.issue(user, remember_me=True)

        assert expires_at == clock() + timedelta(days=30)
        payload = tokens.verify(token)
        assert payload.remember_me is True
        assert payload.session_id is None
        assert tokens.classify(payload) is TokenLifetime.EXTENDED

    def test_expired_token_rejected(self, tokens, user, clock):
        token, _ = tokens.issue(user)
        clock.advance(days=3)

        with pytest.raises(TokenError) as exc_info:
            tokens.verify(token)

        assert exc_info.value.code is TokenErrorCode.EXPIRED
        assert exc_info.value.message == "Session expired. Please login again"

    @pytest.mark.parametrize("bad", ["abc", "a.b", "a..c", "a.b.c.d"])
    def test_wrong_shape_is_invalid_format(self, tokens, bad):
        with pytest.raises(TokenError) as exc_info:
            tokens.verify(bad)
        assert exc_info.value.code is TokenErrorCode.INVALID_FORMAT

    def test_signature_from_other_secret_rejected(self, tokens, user, settings, clock):
        forged_service = TokenService(
            settings.model_copy(update={"jwt_secret": "someone-else"}), clock=clock
        )
        forged, _ = forged_service.issue(user)

        with pytest.raises(TokenError) as exc_info:
            tokens.verify(forged)
        assert exc_info.value.code is TokenErrorCode.MALFORMED

    def test_tampered_payload_rejected(self, tokens, user):
        token, _ = tokens.issue(user)
        header, _, signature = token.split(".")
        claims = {"sub": "admin", "iss": "korella", "iat": 1, "exp": 9999999999}
        tampered = f"{header}.{_encode_segment(json.dumps(claims).encode())}.{signature}"

        with pytest.raises(TokenError) as exc_info:
            tokens.verify(tampered)
        assert exc_info.value.code is TokenErrorCode.MALFORMED

    def test_alg_none_rejected(self, tokens):
        header = _encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        body = _encode_segment(json.dumps({"sub": "x", "iat": 1, "exp": 9999999999}).encode())

        with pytest.raises(TokenError) as exc_info:
            tokens.verify(f"{header}.{body}.sig")
        assert exc_info.value.code is TokenErrorCode.MALFORMED

    def test_wrong_issuer_rejected(self, tokens, user, settings, clock):
        other = TokenService(settings.model_copy(update={"jwt_issuer": "elsewhere"}), clock=clock)
        token, _ = other.issue(user)

        with pytest.raises(TokenError):
            tokens.verify(token)

    def test_token_error_is_401(self):
        error = TokenError(TokenErrorCode.MISSING)
        assert isinstance(error, AuthenticationError)
        assert error.status_code == 401
        assert error.detail == {"reason": "MISSING"}


class TestPayloadHelpers:
    def test_extract_from_header(self):
        assert extract_from_header("Bearer abc.def.ghi") == "abc.def.ghi"
        assert extract_from_header("Basic dXNlcjpwYXNz") is None
        assert extract_from_header("Bearer ") is None
        assert extract_from_header(None) is None

    def test_parse_payload_ignores_signature(self, tokens, user):
        token, _ = tokens.issue(user)
        header, body, _ = token.split(".")
        payload = parse_payload(f"{header}.{body}.not-the-signature")
        assert payload is not None
        assert payload.user_id == "user-1"

    def test_parse_payload_rejects_garbage(self):
        assert parse_payload("x.%%%.z") is None
        assert parse_payload("only-one-part") is None

    @pytest.mark.parametrize(
        "claims",
        [
            '{"sub":"u1","iat":1,"exp":Infinity}',
            '{"sub":"u1","iat":-Infinity,"exp":2}',
            '{"sub":"u1","iat":1,"exp":NaN}',
            '{"sub":"u1","iat":1,"exp":1e400}',
            '{"sub":"u1","iat":1,"exp":99999999999999}',
            '{"sub":"u1","iat":-5,"exp":2}',
            '{"sub":"u1","iat":true,"exp":2}',
            '{"sub":"u1","iat":"1","exp":2}',
            '{"sub":"u1","iat":1}',
        ],
    )
    def test_parse_payload_rejects_unusable_timestamps(self, claims):
        token = f"{_encode_segment(b'{}')}.{_encode_segment(claims.encode())}.sig"
        assert parse_payload(token) is None

    def test_verify_rejects_overflowing_expiry(self, tokens):
        header = _encode_segment(b'{"alg":"HS256","typ":"JWT"}')
        body = _encode_segment(b'{"iss":"korella","sub":"u1","iat":1,"exp":1e400}')
        token = f"{header}.{body}.{tokens._sign(f'{header}.{body}')}"

        with pytest.raises(TokenError) as exc_info:
            tokens.verify(token)
        assert exc_info.value.code is TokenErrorCode.MALFORMED

    def test_time_remaining_and_expiry(self, tokens, user, clock):
        token, _ = tokens.issue(user)
        payload = tokens.verify(token)

        clock.advance(days=1, hours=1)
        remaining = time_remaining(payload, clock())
        assert remaining.expired is False
        assert remaining.days == 1
        assert remaining.hours == 47
        assert not is_expired(payload, clock())

        clock.advance(days=2)
        assert time_remaining(payload, clock()).expired is True
        assert is_expired(payload, clock())

    def test_classify_unknown_lifetime(self, tokens, user, clock):
        token, _ = tokens.issue(user)
        payload = tokens.verify(token)
        odd = type(payload)(**{**payload.__dict__, "exp": payload.iat + 7 * 86400})
        assert tokens.classify(odd) is TokenLifetime.UNKNOWN
