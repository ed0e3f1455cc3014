"""Background worker that delivers queued notifications.

The worker pops jobs from the notification queue and hands them to the
``EmailService``. A failed delivery waits out its exponential backoff on a
separate retry task, so other jobs keep flowing, and is then pushed back with
an attempt counter until ``max_retries`` is exhausted, after which the job is
dropped and logged. Delivery failures never reach the request that scheduled
the job.

On ``stop`` the worker keeps draining the queue, including pending retries,
until it is done or the grace period elapses. Whatever is still in flight or
waiting for a retry at that point goes back on the queue.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional, Set

from tokenkeep.logging import get_logger, hash_email, set_correlation_id
from tokenkeep.service.email import EmailService
from tokenkeep.service.notifications import (
    NotificationJob,
    NotificationKind,
    NotificationQueue,
)

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 2.0
DEFAULT_POLL_TIMEOUT_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0


class NotificationWorker:
    def __init__(
        self,
        queue: NotificationQueue,
        email: EmailService,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> None:
        self.queue = queue
        self.email = email
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.poll_timeout = poll_timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._retries: Set[asyncio.Task] = set()
        self.delivered = 0
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def _sender(self, kind: NotificationKind) -> Callable[[str, str], bool]:
        senders: Dict[NotificationKind, Callable[[str, str], bool]] = {
            NotificationKind.EMAIL_VERIFICATION: self.email.send_email_verification,
            NotificationKind.PASSWORD_RESET: self.email.send_password_reset,
            NotificationKind.VERIFICATION_CODE: self.email.send_verification_code,
            NotificationKind.LOGIN_OTP: self.email.send_login_otp,
        }
        return senders[kind]

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("notification_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("notification_worker_started", max_retries=self.max_retries)

    async def stop(self, grace_seconds: float = 10.0) -> None:
        """Stop accepting new work and drain what is queued within the grace period."""
        self._running = False
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("notification_worker_drain_timeout", grace_seconds=grace_seconds)
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._retries:
            pending = list(self._retries)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("notification_retries_requeued", count=len(pending))
        logger.info(
            "notification_worker_stopped", delivered=self.delivered, dropped=self.dropped
        )

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while True:
            try:
                job = await self.queue.pop(self.poll_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "notification_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if not self._running:
                    return
                # Exponential backoff on repeated queue errors
                backoff = min(
                    MAX_BACKOFF_SECONDS, self.retry_delay * (2 ** (consecutive_errors - 1))
                )
                await asyncio.sleep(backoff)
                continue

            consecutive_errors = 0
            if job is None:
                if not self._running and not self._retries:
                    return
                continue
            try:
                await self.process(job)
            except asyncio.CancelledError:
                await self._requeue(job)
                logger.warning(
                    "notification_requeued_on_shutdown", kind=job.kind.value, job_id=job.id
                )
                raise

    async def process(self, job: NotificationJob) -> bool:
        """Deliver one job; reschedule or drop it on failure."""
        set_correlation_id(job.id)
        sender = self._sender(job.kind)
        try:
            sent = await asyncio.to_thread(sender, job.email, job.secret)
        except Exception as exc:
            logger.error(
                "notification_delivery_error",
                kind=job.kind.value,
                job_id=job.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sent = False

        if sent:
            self.delivered += 1
            logger.info(
                "notification_delivered",
                kind=job.kind.value,
                job_id=job.id,
                attempts=job.attempts + 1,
            )
            return True

        job.attempts += 1
        if job.attempts > self.max_retries:
            self.dropped += 1
            logger.error(
                "notification_dropped",
                kind=job.kind.value,
                job_id=job.id,
                attempts=job.attempts,
                email_hash=hash_email(job.email),
            )
            return False

        backoff = min(MAX_BACKOFF_SECONDS, self.retry_delay * (2 ** (job.attempts - 1)))
        logger.warning(
            "notification_retry_scheduled",
            kind=job.kind.value,
            job_id=job.id,
            attempts=job.attempts,
            backoff_seconds=backoff,
        )
        task = asyncio.create_task(self._retry_after(job, backoff))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)
        return False

    async def _retry_after(self, job: NotificationJob, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            # Also runs when stop() cancels the wait
            await self._requeue(job)

    async def _requeue(self, job: NotificationJob) -> None:
        try:
            await self.queue.push(job)
        except Exception as exc:
            self.dropped += 1
            logger.error(
                "notification_requeue_failed",
                kind=job.kind.value,
                job_id=job.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
