"""Notification jobs and the fire-and-forget dispatcher used by auth flows.

Requests only schedule a job; delivery happens on ``NotificationWorker``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from tokenkeep.logging import get_logger, hash_email
from tokenkeep.storage.models import utcnow

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    EMAIL_VERIFICATION = "email:verify_token"
    PASSWORD_RESET = "email:password_reset"
    VERIFICATION_CODE = "email:verify_code"
    LOGIN_OTP = "email:login_otp"


class NotificationError(Exception):
    """Raised when a notification could not be scheduled."""


@dataclass
class NotificationJob:
    kind: NotificationKind
    email: str
    secret: str
    attempts: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["enqueued_at"] = self.enqueued_at.isoformat()
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "NotificationJob":
        data = json.loads(raw)
        return cls(
            kind=NotificationKind(data["kind"]),
            email=data["email"],
            secret=data["secret"],
            attempts=int(data.get("attempts", 0)),
            id=data["id"],
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
        )


class NotificationQueue(Protocol):
    async def push(self, job: NotificationJob) -> None: ...

    async def pop(self, timeout: float) -> Optional[NotificationJob]: ...

    async def close(self) -> None: ...


class NotificationDispatcher(Protocol):
    async def enqueue(self, kind: NotificationKind, email: str, secret: str) -> None: ...


class InMemoryNotificationQueue:
    """Process-local queue for tests and single-node development."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[NotificationJob] = asyncio.Queue()

    async def push(self, job: NotificationJob) -> None:
        await self._queue.put(job)

    async def pop(self, timeout: float) -> Optional[NotificationJob]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()

    async def close(self) -> None:
        return None


class QueueDispatcher:
    """Schedules jobs on a queue with a bounded wait."""

    def __init__(self, queue: NotificationQueue, *, enqueue_timeout: float = 60.0) -> None:
        self.queue = queue
        self.enqueue_timeout = enqueue_timeout

    async def enqueue(self, kind: NotificationKind, email: str, secret: str) -> None:
        job = NotificationJob(kind=kind, email=email, secret=secret)
        try:
            await asyncio.wait_for(self.queue.push(job), timeout=self.enqueue_timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "notification_enqueue_timeout",
                kind=kind.value,
                email_hash=hash_email(email),
                timeout=self.enqueue_timeout,
            )
            raise NotificationError("timed out scheduling notification") from exc
        except Exception as exc:
            logger.error(
                "notification_enqueue_failed",
                kind=kind.value,
                email_hash=hash_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NotificationError("could not schedule notification") from exc
        logger.info(
            "notification_enqueued", kind=kind.value, job_id=job.id, email_hash=hash_email(email)
        )
