"""
Mock payment processor. Always succeeds after a short wait; nothing is stored.
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Optional

from auth import Identity
from config import settings
from errors import InvalidInput
from schemas import Payment

logger = logging.getLogger(__name__)


async def process_payment(identity: Identity, amount, currency: str = "THB", delay: Optional[float] = None) -> dict:
    try:
        amount = round(float(amount), 2)
    except (TypeError, ValueError):
        raise InvalidInput("Amount must be a number", fields=["amount"])
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidInput("Amount must be positive", fields=["amount"])
    currency = (currency or "THB").strip().upper()

    await asyncio.sleep(settings.PAYMENT_DELAY_SECONDS if delay is None else delay)

    payment = Payment(
        payment_id=f"PAY-{uuid.uuid4().hex[:16].upper()}",
        amount=amount,
        currency=currency,
        status="completed",
        created_at=datetime.now(timezone.utc),
    )
    logger.info("Payment %s of %.2f %s completed for %s", payment.payment_id, amount, currency, identity.username)
    return {
        "paymentId": payment.payment_id,
        "status": payment.status,
        "success": True,
        "amount": payment.amount,
        "currency": payment.currency,
        "created_at": payment.created_at,
    }
