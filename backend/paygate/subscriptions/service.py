"""Data-access subscriptions, admitted through the same gate as listings."""

import logging
import re
from datetime import timedelta
from typing import List, Optional

from ..admission.gate import AdmissionGate, AdmissionResult
from ..admission.repository import Subscription, SubscriptionRepository, utcnow
from ..payment.config import PaymentConfig
from ..payment.errors import MalformedInputError, NotFoundError

logger = logging.getLogger(__name__)

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    text = (email or "").strip().lower()
    if not _EMAIL.match(text):
        raise MalformedInputError(f"Invalid email address: {email!r}")
    return text


class SubscriptionService:
    def __init__(self, repository: SubscriptionRepository, gate: AdmissionGate, config: PaymentConfig):
        self.repository = repository
        self.gate = gate
        self.config = config

    async def subscribe(
        self,
        email: str,
        reference: str,
        payment_network: str,
        promo_code: Optional[str] = None,
    ) -> AdmissionResult:
        email = normalize_email(email)

        async def create(admitted_reference: str) -> Subscription:
            subscription = Subscription(
                email=email,
                reference=admitted_reference,
                payment_network=payment_network,
                expires_at=utcnow() + timedelta(days=self.config.subscription_days),
                promo_code=promo_code.strip().lower() if promo_code else None,
            )
            return await self.repository.insert(subscription)

        if promo_code and promo_code.strip():
            result = await self.gate.admit_promo(promo_code, reference, create, purpose="subscription")
        else:
            result = await self.gate.admit_payment(
                payment_network, reference, self.config.subscription_price_usdc, create, purpose="subscription"
            )
        if result.replayed and result.entity is None:
            result.entity = await self.repository.get(result.entity_id)
            if result.entity is None:
                raise NotFoundError("Subscription no longer exists")
        return result

    async def active_for(self, email: str) -> List[Subscription]:
        now = utcnow()
        return [s for s in await self.repository.find_by_email(normalize_email(email)) if s.expires_at > now]
