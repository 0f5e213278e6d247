"""Tests for the retention purger."""

from datetime import timedelta
from unittest.mock import Mock

from korella.service.retention import RetentionPurger
from korella.storage.models import AuthLog


def test_purges_old_logs_and_spent_tokens(store, clock):
    user = store.create_user("ada@example.com", "Ada")
    now = clock()
    store.append_auth_log(AuthLog("login_success", True, user_id=user.id, created_at=now - timedelta(days=8)))
    store.append_auth_log(AuthLog("login_success", True, user_id=user.id, created_at=now - timedelta(days=1)))

    expired = store.create_password_reset(user.id, "expired-token", now - timedelta(minutes=1))
    live = store.create_password_reset(user.id, "live-token", now + timedelta(hours=1))
    used = store.create_password_reset(user.id, "used-token", now + timedelta(hours=1))
    store.consume_password_reset(used.id, "hash", "bcrypt", now - timedelta(hours=25))
    store.create_email_verification(user.id, "old-verify", now - timedelta(hours=2))

    report = RetentionPurger(store, clock=clock).run()

    assert report.success
    assert report.error is None
    assert report.auth_logs_deleted == 1
    assert report.reset_tokens_deleted == 2
    assert report.verification_tokens_deleted == 1
    assert set(store.password_resets) == {live.id}
    assert expired.id not in store.password_resets
    assert len(store.auth_logs) == 1


def test_recently_used_tokens_are_kept(store, clock):
    user = store.create_user("ada@example.com", "Ada")
    reset = store.create_password_reset(user.id, "fresh-used", clock() + timedelta(hours=1))
    store.consume_password_reset(reset.id, "hash", "bcrypt", clock() - timedelta(hours=1))

    report = RetentionPurger(store, clock=clock).run()

    assert report.reset_tokens_deleted == 0
    assert reset.id in store.password_resets


def test_failing_step_does_not_stop_others(clock):
    broken = Mock()
    broken.purge_auth_logs.side_effect = RuntimeError("relation auth_log does not exist")
    broken.purge_password_resets.return_value = 4
    broken.purge_email_verifications.return_value = 2

    report = RetentionPurger(broken, clock=clock).run()

    assert not report.success
    assert "auth_logs_deleted" in report.error
    assert report.auth_logs_deleted == 0
    assert report.reset_tokens_deleted == 4
    assert report.verification_tokens_deleted == 2


def test_retention_windows_are_configurable(clock):
    store = Mock()
    store.purge_auth_logs.return_value = 0
    store.purge_password_resets.return_value = 0
    store.purge_email_verifications.return_value = 0

    RetentionPurger(
        store, auth_log_retention_days=30, used_token_retention_hours=48, clock=clock
    ).run()

    store.purge_auth_logs.assert_called_once_with(clock() - timedelta(days=30))
    store.purge_password_resets.assert_called_once_with(clock(), clock() - timedelta(hours=48))


def test_report_dict_shape(store, clock):
    data = RetentionPurger(store, clock=clock).run().to_dict()
    assert set(data) == {
        "success",
        "auth_logs_deleted",
        "reset_tokens_deleted",
        "verification_tokens_deleted",
        "duration_ms",
        "error",
    }
