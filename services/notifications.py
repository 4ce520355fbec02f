"""
User-facing side effects of loan transitions: in-app notification rows (written inside the
same transaction as the transition) and fire-and-forget email dispatch after commit.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Notification
from utils.dates import utcnow

logger = logging.getLogger(__name__)

TEMPLATE_APPLICATION_RECEIVED = "loan_application_received"
TEMPLATE_DEPOSIT_CONFIRMED = "loan_deposit_confirmed"
TEMPLATE_CRYPTO_DEPOSIT_PENDING = "loan_crypto_deposit_pending"
TEMPLATE_LOAN_APPROVED = "loan_approved"
TEMPLATE_LOAN_ACTIVATED = "loan_activated"
TEMPLATE_LOAN_REJECTED = "loan_rejected"
TEMPLATE_LOAN_CLOSED = "loan_closed"


class EmailDispatcher(Protocol):
    async def send(self, template: str, recipient: str, data: dict[str, Any]) -> None: ...


class LoggingEmailDispatcher:
    """Default dispatcher: records what would be sent. Production wires a real transport."""

    async def send(self, template: str, recipient: str, data: dict[str, Any]) -> None:
        logger.info("Email %s -> %s %s", template, recipient, data)


email_dispatcher: EmailDispatcher = LoggingEmailDispatcher()


def set_email_dispatcher(dispatcher: EmailDispatcher) -> None:
    global email_dispatcher
    email_dispatcher = dispatcher


async def send_email(template: str, recipient: str, data: dict[str, Any]) -> bool:
    """Never raises: a failed email must not affect a committed transition."""
    try:
        await email_dispatcher.send(template, recipient, data)
        return True
    except Exception:
        logger.exception("Failed to send %s email to %s", template, recipient)
        return False


def add_notification(session: AsyncSession, user_id: str, title: str, message: str, type: str = "loan") -> Notification:
    note = Notification(
        id=f"ntf-{uuid.uuid4().hex[:12]}",
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        read=False,
        created_at=utcnow(),
    )
    session.add(note)
    return note


async def list_notifications(session: AsyncSession, user_id: str, unread_only: bool = False) -> list[Notification]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.read.is_(False))
    result = await session.execute(query.order_by(Notification.created_at.desc()))
    return list(result.scalars().all())


async def mark_read(session: AsyncSession, user_id: str, notification_id: str) -> Optional[Notification]:
    result = await session.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    )
    note = result.scalar_one_or_none()
    if note is not None:
        note.read = True
        await session.flush()
    return note


def loan_type_label(loan_type: str) -> str:
    return loan_type.replace("_", " ").title()
