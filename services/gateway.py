"""Payment gateway adapter.

The booking core only needs three things from a provider: open an order
for an amount, refund a payment, and a shared secret to check callback
signatures with. ``StripeGateway`` does the first two with a PaymentIntent
per order and the Refunds API.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass

import stripe

from services.errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    amount_minor: int
    currency: str


def sign(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret, order_id, payment_id, signature) -> bool:
    if not secret or not order_id or not payment_id or not signature:
        return False
    expected = sign(secret, str(order_id), str(payment_id))
    return hmac.compare_digest(expected, str(signature))


class StripeGateway:
    provider = "STRIPE"

    def __init__(self, api_key=None, signing_secret=None, timeout: int = 10):
        self.signing_secret = signing_secret
        self._client = None
        if api_key:
            self._client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout),
            )

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            signing_secret=config.get("PAYMENT_SIGNING_SECRET"),
            timeout=config.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10),
        )

    def is_configured(self) -> bool:
        return self._client is not None and bool(self.signing_secret)

    def create_order(self, amount_minor: int, currency: str, metadata=None) -> GatewayOrder:
        if not self.is_configured():
            raise GatewayError("Stripe is not configured (STRIPE_SECRET_KEY / PAYMENT_SIGNING_SECRET)")
        try:
            intent = self._client.payment_intents.create(params={
                "amount": amount_minor,
                "currency": currency.lower(),
                "metadata": metadata or {},
            })
        except stripe.StripeError as exc:
            raise GatewayError(str(exc)) from exc
        return GatewayOrder(order_id=intent.id, amount_minor=amount_minor, currency=currency)

    def refund(self, payment_id: str, amount_minor=None):
        if not self.is_configured():
            raise GatewayError("Stripe is not configured")
        params = {"charge": payment_id} if payment_id.startswith("ch_") else {"payment_intent": payment_id}
        if amount_minor is not None:
            params["amount"] = amount_minor
        try:
            refund = self._client.refunds.create(params=params)
        except stripe.StripeError as exc:
            raise GatewayError(str(exc)) from exc
        logger.info("Refund %s issued for %s", refund.id, payment_id)
        return refund.id
