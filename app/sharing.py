"""Sharing a sale with another salesperson.

The sender marks the sale as shared (status "pending") and the recipient gets
an unread notification. The recipient then accepts or rejects it; accepted
sales show up on the recipient's dashboard too.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import lookup_user_id_by_email
from .models import Notification, Sale

logger = logging.getLogger("sharing")

SHARE_PENDING = "pending"
SHARE_ACCEPTED = "accepted"
SHARE_REJECTED = "rejected"
SHARE_RESPONSES = (SHARE_ACCEPTED, SHARE_REJECTED)

NOTIFY_SHARED_SALE = "shared_sale_pending"


class SharingError(Exception):
    pass


async def share_sale(db: AsyncSession, sale: Sale, recipient_email: str, sender_id: int) -> Notification:
    recipient_email = (recipient_email or "").strip().lower()
    recipient_id = await lookup_user_id_by_email(db, recipient_email)
    if recipient_id is None:
        raise SharingError("Recipient not found")
    if recipient_id == sender_id:
        raise SharingError("You cannot share a sale with yourself")

    sale.shared_with_email = recipient_email
    sale.shared_with_id = recipient_id
    sale.shared_status = SHARE_PENDING

    # A re-share supersedes any earlier invitation for this sale
    await db.execute(
        update(Notification)
        .where(Notification.sale_id == sale.id, Notification.read.is_(False))
        .values(read=True)
    )

    note =Notification(user_id=recipient_id, sale_id=sale.id, sender_id=sender_id, type=NOTIFY_SHARED_SALE)
    db.add(note)
    await db.commit()
    await db.refresh(note)
    logger.info(f"Sale {sale.id} shared by user {sender_id} with user {recipient_id}")
    return note


async def respond_to_shared_sale(db: AsyncSession, sale: Sale, user_id: int, response: str) -> Sale:
    if response not in SHARE_RESPONSES:
        raise SharingError(f"Response must be one of {', '.join(SHARE_RESPONSES)}")
    if sale.shared_with_id != user_id:
        raise SharingError("This sale was not shared with you")

    sale.shared_status = response
    await db.execute(
        update(Notification)
        .where(Notification.sale_id == sale.id, Notification.user_id == user_id)
        .values(read=True)
    )
    await db.commit()
    await db.refresh(sale)
    logger.info(f"User {user_id} {response} shared sale {sale.id}")
    return sale


async def get_shared_sale_notifications(db: AsyncSession, user_id: int) -> list[dict]:
    """Unread notifications for `user_id`, newest first, with a summary of the sale."""
    rows = (
        await db.execute(
            select(Notification, Sale)
            .join(Sale, Sale.id == Notification.sale_id)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .order_by(Notification.created_at.desc(), Notification.id.desc())
        )
    ).all()
    return [
        {
            "id": n.id,
            "sale_id": n.sale_id,
            "sender_id": n.sender_id,
            "type": n.type,
            "status": s.shared_status,
            "created_at": n.created_at.isoformat() if n.created_at else None,
            "sale": {
                "id": s.id,
                "stock_number": s.stock_number,
                "customer_name": s.customer_name,
                "sale_type": s.sale_type,
                "sale_price": s.sale_price,
                "date": s.date.isoformat() if s.date else None,
            },
        }
        for n, s in rows
    ]


async def mark_notification_as_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
    note = (
        await db.execute(
            select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
        )
    ).scalar_one_or_none()
    if note is None:
        return False
    note.read = True
    await db.commit()
    return True
