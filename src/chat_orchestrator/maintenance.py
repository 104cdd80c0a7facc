"""Periodic cache and token sweeps on an APScheduler background scheduler."""

from __future__ import annotations

import logging
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler

from chat_orchestrator.gateway.dedup import DedupCache
from chat_orchestrator.gateway.rate_limiter import RateLimiter
from chat_orchestrator.security.pairing import PairingManager

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    def __init__(
        self,
        *,
        dedup: DedupCache,
        rate_limiter: RateLimiter,
        pairing: PairingManager,
        dedup_interval_s: float = 300.0,
        rate_limit_interval_s: float = 60.0,
        pairing_interval_s: float = 3600.0,
    ) -> None:
        self.dedup = dedup
        self.rate_limiter = rate_limiter
        self.pairing = pairing
        self.intervals = {
            "dedup_sweep": dedup_interval_s,
            "rate_limit_sweep": rate_limit_interval_s,
            "pairing_token_sweep": pairing_interval_s,
        }
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self._started = False

    def jobs(self) -> dict[str, Callable[[], Any]]:
        return {
            "dedup_sweep": self.dedup.sweep,
            "rate_limit_sweep": self.rate_limiter.sweep,
            "pairing_token_sweep": self.pairing.clean_expired_tokens,
        }

    def start(self) -> None:
        if self._started:
            return
        for job_id, func in self.jobs().items():
            self.scheduler.add_job(
                self._guarded(job_id, func),
                trigger="interval",
                seconds=self.intervals[job_id],
                id=job_id,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        self.scheduler.start()
        self._started = True
        logger.info("maintenance event=started jobs=%s", ",".join(self.intervals))

    def shutdown(self) -> None:
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("maintenance event=stopped")

    @property
    def running(self) -> bool:
        return self._started

    def run_all(self) -> dict[str, Any]:
        """Run every sweep once on the calling thread."""
        return {job_id: func() for job_id, func in self.jobs().items()}

    @staticmethod
    def _guarded(job_id: str, func: Callable[[], Any]) -> Callable[[], None]:
        def run() -> None:
            try:
                result = func()
            except Exception:  # noqa: BLE001
                logger.exception("maintenance event=job_failed job=%s", job_id)
                return
            logger.debug("maintenance event=job_done job=%s result=%s", job_id, result)

        return run
