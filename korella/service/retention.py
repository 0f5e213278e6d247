from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from korella.logging import get_logger, sanitize_error_message
from korella.storage.common import AccountStore
from korella.storage.models import utcnow

logger = get_logger(__name__)


@dataclass
class PurgeReport:
    success: bool = True
    auth_logs_deleted: int = 0
    reset_tokens_deleted: int = 0
    verification_tokens_deleted: int = 0
    duration_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionPurger:
    """Deletes audit rows past retention and reset/verification tokens past use.

    Each table is purged on its own so one failing delete still lets the
    others report their counts.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        auth_log_retention_days: int = 7,
        used_token_retention_hours: int = 24,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.auth_log_retention_days = auth_log_retention_days
        self.used_token_retention_hours = used_token_retention_hours
        self._clock = clock or utcnow

    def run(self) -> PurgeReport:
        started = time.monotonic()
        now = self._clock()
        log_cutoff = now - timedelta(days=self.auth_log_retention_days)
        used_cutoff = now - timedelta(hours=self.used_token_retention_hours)
        report = PurgeReport()
        errors: list[str] = []

        steps = (
            ("auth_logs_deleted", lambda: self.store.purge_auth_logs(log_cutoff)),
            (
                "reset_tokens_deleted",
                lambda: self.store.purge_password_resets(now, used_cutoff),
            ),
            (
                "verification_tokens_deleted",
                lambda: self.store.purge_email_verifications(now, used_cutoff),
            ),
        )
        for field_name, purge in steps:
            try:
                setattr(report, field_name, purge())
            except Exception as exc:
                message = sanitize_error_message(str(exc))
                logger.error("retention_purge_step_failed", step=field_name, error=message)
                errors.append(f"{field_name}: {message}")

        report.success = not errors
        report.error = "; ".join(errors) or None
        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("retention_purge_complete", **report.to_dict())
        return report

    async def run_forever(self, interval_hours: int = 24) -> None:
        while True:
            await asyncio.to_thread(self.run)
            await asyncio.sleep(interval_hours * 3600)


__all__ = ["PurgeReport", "RetentionPurger"]
