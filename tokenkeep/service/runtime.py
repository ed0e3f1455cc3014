from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenkeep.config import Settings, get_settings, reset_settings_cache
from tokenkeep.logging import get_logger
from tokenkeep.service.auth import AuthService
from tokenkeep.service.email import EmailService
from tokenkeep.service.notification_worker import NotificationWorker
from tokenkeep.service.notifications import (
    InMemoryNotificationQueue,
    NotificationQueue,
    QueueDispatcher,
)
from tokenkeep.storage.memory import MemoryStore
from tokenkeep.storage.postgres import PostgresStore
from tokenkeep.storage.redis_queue import RedisNotificationQueue

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the wired service instances for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            use_memory_queue=self.settings.use_memory_queue,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.queue: NotificationQueue = self._build_queue()
        self.dispatcher = QueueDispatcher(
            self.queue, enqueue_timeout=self.settings.notification_enqueue_timeout_seconds
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            verification_link_ttl=timedelta(
                minutes=self.settings.email_verification_ttl_minutes
            ),
            reset_link_ttl=timedelta(minutes=self.settings.password_reset_ttl_minutes),
            code_ttl=timedelta(seconds=self.settings.verification_code_ttl_seconds),
            login_code_ttl=timedelta(seconds=self.settings.login_otp_ttl_seconds),
        )
        self.auth = AuthService(self.store, self.dispatcher, self.settings)
        self.worker = NotificationWorker(
            self.queue,
            self.email,
            max_retries=self.settings.notification_max_retries,
            retry_delay=self.settings.notification_retry_delay_seconds,
            poll_timeout=self.settings.notification_poll_timeout_seconds,
        )
        self._purge_task: Optional[asyncio.Task] = None

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            queue_type=type(self.queue).__name__,
            email_configured=self.email.is_configured,
        )

    def _build_queue(self) -> NotificationQueue:
        if self.settings.use_memory_queue:
            return InMemoryNotificationQueue()
        queue = RedisNotificationQueue(
            self.settings.redis_url, key=self.settings.notification_queue_key
        )
        try:
            queue.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_queue_init_failed",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            raise RuntimeError(
                "Redis is required for notification delivery; start Redis or set "
                "USE_MEMORY_QUEUE=true for a single-process queue."
            ) from exc
        return queue

    async def start(self) -> None:
        await self.worker.start()
        interval = self.settings.purge_interval_seconds
        if interval > 0 and self._purge_task is None:
            self._purge_task = asyncio.create_task(self._purge_loop(interval))

    async def _purge_loop(self, interval: float) -> None:
        """Periodically drop expired secrets so the store stays bounded."""
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.store.purge_expired)
            except Exception as exc:
                logger.error(
                    "runtime_purge_failed", error_type=type(exc).__name__, error=str(exc)
                )

    async def close(self) -> None:
        """Drain pending notifications, then release the queue and the store."""
        if self._purge_task is not None:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
            self._purge_task = None
        await self.worker.stop(grace_seconds=self.settings.shutdown_grace_seconds)
        try:
            await self.queue.close()
        except Exception as exc:
            logger.warning("runtime_queue_close_failed", error=str(exc))
        try:
            self.store.close()
        except Exception as exc:
            logger.warning("runtime_store_close_failed", error=str(exc))
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
