"""
Payment gateway lookups.

The rest of the backend only needs "is this reference paid, and for how
much"; this module answers that from Stripe.
"""

import logging
from dataclasses import dataclass

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)


class PaymentGatewayError(RuntimeError):
    pass


@dataclass(frozen=True)
class PaymentVerification:
    reference: str
    paid: bool
    amount: int  # minor currency units
    currency: str
    gateway_id: str


def _stripe_init() -> None:
    stripe.api_key = settings.STRIPE_SECRET_KEY


def gateway_is_configured() -> bool:
    return bool(settings.STRIPE_SECRET_KEY)


def verify_payment(reference: str) -> PaymentVerification:
    """
    Look up a Checkout Session (`cs_...`) or PaymentIntent (`pi_...`).

    Raises PaymentGatewayError when the gateway is unconfigured or the
    lookup itself fails.
    """
    reference = (reference or "").strip()
    if not gateway_is_configured():
        raise PaymentGatewayError("Missing payment gateway key")

    _stripe_init()
    try:
        if reference.startswith("pi_"):
            intent = stripe.PaymentIntent.retrieve(reference)
            return PaymentVerification(
                reference=reference,
                paid=intent.get("status") == "succeeded",
                amount=int(intent.get("amount_received") or 0),
                currency=(intent.get("currency") or "").lower(),
                gateway_id=intent.get("id") or reference,
            )

        session = stripe.checkout.Session.retrieve(reference)
        return PaymentVerification(
            reference=reference,
            paid=session.get("payment_status") == "paid",
            amount=int(session.get("amount_total") or 0),
            currency=(session.get("currency") or "").lower(),
            gateway_id=session.get("payment_intent") or session.get("id") or reference,
        )
    except stripe.StripeError as exc:
        logger.error("Payment lookup failed for %s: %s", reference, exc)
        raise PaymentGatewayError(str(exc)) from exc
