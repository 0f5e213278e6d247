"""Tests for per-request account checks and session state helpers."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from korella.service.sessions import (
    SessionErrorCode,
    SessionState,
    SessionValidator,
    evaluate_user,
    get_lock_expiration_time,
    get_session_state,
    has_required_tier,
    subscription_status,
)
from korella.storage.models import ACCOUNT_DEACTIVATED, User


def _user(**overrides):
    fields = {
        "id": "u1",
        "email": "grace@example.com",
        "full_name": "Grace Hopper",
        "email_verified": True,
    }
    fields.update(overrides)
    return User(**fields)


class TestEvaluateUser:
    def test_active_verified_user_is_valid(self, clock):
        user = _user()
        result = evaluate_user(user, clock())
        assert result.valid
        assert result.user is user
        assert result.error is None

    def test_missing_user(self, clock):
        result = evaluate_user(None, clock())
        assert not result.valid
        assert result.error.code is SessionErrorCode.USER_NOT_FOUND

    def test_deleted_wins_over_other_states(self, clock):
        user = _user(
            is_deleted=True,
            account_status=ACCOUNT_DEACTIVATED,
            locked_until=clock() + timedelta(minutes=5),
        )
        result = evaluate_user(user, clock())
        assert result.error.code is SessionErrorCode.USER_NOT_FOUND
        assert result.error.message == "User not found"

    def test_deactivated_before_locked(self, clock):
        user = _user(
            account_status=ACCOUNT_DEACTIVATED,
            locked_until=clock() + timedelta(minutes=5),
        )
        result = evaluate_user(user, clock())
        assert result.error.code is SessionErrorCode.ACCOUNT_DEACTIVATED
        assert result.error.message == "Account has been deactivated"

    def test_locked_carries_lock_expiry(self, clock):
        until = clock() + timedelta(minutes=20)
        result = evaluate_user(_user(locked_until=until), clock())
        assert result.error.code is SessionErrorCode.ACCOUNT_LOCKED
        assert result.error.locked_until == until

    def test_expired_lock_is_ignored(self, clock):
        result = evaluate_user(_user(locked_until=clock() - timedelta(seconds=1)), clock())
        assert result.valid

    def test_unverified_reported_as_deactivated(self, clock):
        result = evaluate_user(_user(email_verified=False), clock())
        assert result.error.code is SessionErrorCode.ACCOUNT_DEACTIVATED
        assert result.error.message == "Email address must be verified"


class TestSessionValidator:
    def test_reads_current_account_state(self, store, clock):
        user = store.create_user("grace@example.com", "Grace", email_verified=True)
        validator = SessionValidator(store, clock=clock)
        assert validator.validate(user.id).valid

        store.set_account_status(user.id, ACCOUNT_DEACTIVATED)
        result = validator.validate(user.id)
        assert result.error.code is SessionErrorCode.ACCOUNT_DEACTIVATED

    def test_unknown_user(self, store):
        result = SessionValidator(store).validate("missing")
        assert result.error.code is SessionErrorCode.USER_NOT_FOUND

    def test_store_failure_becomes_invalid_token(self):
        broken = Mock()
        broken.get_user.side_effect = RuntimeError("connection reset")
        result = SessionValidator(broken).validate("u1")
        assert not result.valid
        assert result.error.code is SessionErrorCode.INVALID_TOKEN
        assert result.error.message == "Session validation failed"


class TestLockExpirationTime:
    @pytest.mark.parametrize(
        "delta, expected",
        [
            (timedelta(minutes=30), "30 minutes"),
            (timedelta(minutes=1, seconds=30), "1 minute"),
            (timedelta(minutes=90), "1 hour"),
            (timedelta(hours=3, minutes=5), "3 hours"),
            (timedelta(seconds=-5), "now"),
        ],
    )
    def test_formatting(self, clock, delta, expected):
        assert get_lock_expiration_time(clock() + delta, clock()) == expected


class TestSessionState:
    def test_active(self, clock):
        info = get_session_state(_user(), clock() + timedelta(days=1), clock())
        assert info.state is SessionState.ACTIVE
        assert info.reason is None

    def test_expired_token(self, clock):
        info = get_session_state(_user(), clock() - timedelta(seconds=1), clock())
        assert info.state is SessionState.EXPIRED

    def test_deleted_is_invalid(self, clock):
        info = get_session_state(_user(is_deleted=True), None, clock())
        assert info.state is SessionState.INVALID

    def test_locked_is_revoked_with_remaining_time(self, clock):
        user = _user(locked_until=clock() + timedelta(minutes=10))
        info = get_session_state(user, None, clock())
        assert info.state is SessionState.REVOKED
        assert info.reason == "Account is locked for 10 minutes"


class TestSubscription:
    def test_tier_ordering(self):
        assert has_required_tier("pro", "free")
        assert has_required_tier("enterprise", "pro")
        assert not has_required_tier("free", "pro")
        assert not has_required_tier("bogus", "trial")

    def test_trial_status(self, clock):
        user = _user(subscription_tier="trial", trial_expires_at=clock() + timedelta(days=5))
        status = subscription_status(user, clock())
        assert status == {
            "tier": "trial",
            "is_trial": True,
            "is_trial_expired": False,
            "days_remaining": 5,
            "accessible_tiers": ["trial"],
        }

    def test_expired_trial(self, clock):
        user = _user(subscription_tier="trial", trial_expires_at=clock() - timedelta(days=1))
        status = subscription_status(user, clock())
        assert status["is_trial_expired"] is True
        assert status["days_remaining"] == 0

    def test_paid_tier(self, clock):
        status = subscription_status(_user(subscription_tier="pro"), clock())
        assert status["accessible_tiers"] == ["trial", "free", "pro"]
        assert status["is_trial"] is False
        assert status["days_remaining"] is None
