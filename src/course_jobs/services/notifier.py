"""Notifier abstraction for templated outbound messages.

Email/SMS delivery is an external collaborator. Implementations must
honour the idempotency key: a key that was already delivered returns
the original delivery id without sending again.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from course_jobs.exceptions import ValidationError
from course_jobs.logging_config import logger
from course_jobs.queue.job import Dispatch, Job
from course_jobs.utils import Clock, new_id, utcnow

if TYPE_CHECKING:
    from course_jobs.queue.engine import JobQueue
    from course_jobs.queue.registry import JobRegistry
    from course_jobs.services.repository import UnitOfWork

TEMPLATES: Dict[str, str] = {
    "material_published": "New material in {course_title}: {filename}",
    "pipeline_failed": "Processing of {artifact_ref} failed at stage {stage}: {error}",
    "certificate_issued": "Your certificate for {course_title} is ready: {url}",
    "course_reminder": "Reminder for {course_title}: {message}",
    "submission_scored": "Submission {submission_id} for {assignment_title} scored {score:.2f}",
}


@dataclass
class Delivery:
    delivery_id: str
    recipient: str
    template: str
    subject: str
    data: Dict[str, Any]
    idempotency_key: Optional[str] = None
    sent_at: datetime = field(default_factory=utcnow)


def render_template(template: str, data: Mapping[str, Any]) -> str:
    """Render a named template.

    Raises:
        ValidationError: If the template is unknown or data lacks a field
    """
    try:
        return TEMPLATES[template].format_map(data)
    except KeyError as e:
        raise ValidationError(f"Cannot render template {template!r}: missing {e}") from None


class Notifier(ABC):
    """Abstract base class for message delivery."""

    @abstractmethod
    async def send(
        self,
        recipient: str,
        template: str,
        data: Mapping[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Send a templated message.

        Args:
            recipient: Address of the recipient
            template: Template name
            data: Template fields
            idempotency_key: Dedupe key, a repeated key is not delivered twice

        Returns:
            Delivery id

        Raises:
            ValidationError: If the template cannot be rendered
            TransientDependencyError: If the transport is unavailable
        """
        pass


class OutboxNotifier(Notifier):
    """Notifier that records deliveries in memory.

    Used by tests and the development app in place of a mail transport.
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._deliveries: List[Delivery] = []
        self._by_key: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    @property
    def deliveries(self) -> List[Delivery]:
        return list(self._deliveries)

    def sent_to(self, recipient: str) -> List[Delivery]:
        return [d for d in self._deliveries if d.recipient == recipient]

    async def send(
        self,
        recipient: str,
        template: str,
        data: Mapping[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> str:
        subject = render_template(template, data)
        async with self._lock:
            if idempotency_key and idempotency_key in self._by_key:
                logger.info(f"Notification {idempotency_key} already delivered, skipping")
                return self._by_key[idempotency_key]
            delivery = Delivery(
                delivery_id=new_id(),
                recipient=recipient,
                template=template,
                subject=subject,
                data=dict(data),
                idempotency_key=idempotency_key,
                sent_at=self._clock(),
            )
            self._deliveries.append(delivery)
            if idempotency_key:
                self._by_key[idempotency_key] = delivery.delivery_id
        logger.info(f"Sent {template} to {recipient}: {subject}")
        return delivery.delivery_id


NOTIFY_JOB_CLASS = "notify.send"


async def enqueue_notification(
    queue: "JobQueue",
    recipient: str,
    template: str,
    data: Mapping[str, Any],
    idempotency_key: str,
    transaction: Optional["UnitOfWork"] = None,
) -> str:
    """Schedule a notify.send job.

    The job class carries the mail rate limit, so every outbound message
    goes through the queue rather than calling the notifier inline. The
    same key dedupes both the job and the delivery.

    Returns:
        Job id
    """
    payload = {
        "recipient": recipient,
        "template": template,
        "data": dict(data),
        "idempotency_key": idempotency_key,
    }
    return await queue.enqueue(
        None,
        NOTIFY_JOB_CLASS,
        payload,
        idempotency_key=idempotency_key,
        transaction=transaction,
        dispatch=Dispatch.AFTER_COMMIT if transaction is not None else Dispatch.IMMEDIATE,
    )


class NotificationJobs:
    """Executes notify.send jobs against a notifier."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    async def handle(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        delivery_id = await self.notifier.send(
            payload["recipient"],
            payload["template"],
            payload.get("data", {}),
            idempotency_key=payload.get("idempotency_key"),
        )
        return {"delivery_id": delivery_id}

    def register(self, registry: "JobRegistry") -> None:
        registry.register(NOTIFY_JOB_CLASS, self.handle)
