"""Payment audit trail helpers."""
import uuid
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from order_settlement.database.models import PaymentEvent, utcnow


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def record_payment_event(
    db: AsyncSession,
    payment_id: uuid.UUID,
    event_type: str,
    event_data: Dict[str, Any],
    correlation_id: str,
) -> PaymentEvent:
    """
    Record a payment event for audit trail.

    The event is added to the session and written with the caller's commit.

    Args:
        db: Database session
        payment_id: Payment ID
        event_type: Event type (e.g. 'payment.succeeded')
        event_data: JSON-serializable event data
        correlation_id: Correlation ID for tracing

    Returns:
        PaymentEvent: The pending audit row
    """
    event = PaymentEvent(
        payment_id=payment_id,
        event_type=event_type,
        event_data=event_data,
        correlation_id=correlation_id,
        created_at=utcnow(),
    )
    db.add(event)
    return event
