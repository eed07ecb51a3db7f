"""
StripeGateway — the only module that talks to Stripe.

Covers the provider side of the recharge contract: webhook signature
verification, PaymentIntent status lookup, and creation of PaymentIntents /
Checkout Sessions. Amounts cross this boundary as Decimal dollars; Stripe's
minor units (cents) never leave this module.
"""
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

import pybreaker
import redis
import stripe

from ledger_service.core.config import settings
from ledger_service.services.circuit_breaker import with_circuit_breaker
from ledger_service.utils.precision import quantize

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300
# Client-side errors say nothing about Stripe's health
_BREAKER_EXCLUDE = [stripe.InvalidRequestError, stripe.CardError, stripe.AuthenticationError]


class PaymentProviderError(Exception):
    """Stripe unreachable, rejected the call, or the breaker is open."""


class InvalidWebhookSignature(Exception):
    pass


@dataclass(frozen=True)
class PaymentIntentInfo:
    id: str
    status: str  # succeeded | processing | requires_action | requires_payment_method | canceled | ...
    amount: Decimal
    currency: str
    metadata: dict = field(default_factory=dict)
    client_secret: str | None = None


@dataclass(frozen=True)
class CheckoutSessionInfo:
    id: str
    url: str | None


def minor_to_amount(minor_units: int | None) -> Decimal:
    return quantize(Decimal(minor_units or 0) / 100)


def amount_to_minor(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


class StripeGateway:
    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        currency: str | None = None,
    ) -> None:
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.currency = currency or settings.stripe_currency

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify Stripe-Signature and return the decoded event as a plain dict."""
        if not self.webhook_secret:
            raise InvalidWebhookSignature("Webhook signing secret not configured")
        if not signature:
            raise InvalidWebhookSignature("Missing Stripe-Signature header")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text, signature, self.webhook_secret, SIGNATURE_TOLERANCE_SECONDS
            )
            return json.loads(text)
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookSignature(str(e)) from e
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidWebhookSignature(f"Malformed payload: {e}") from e

    # ------------------------------------------------------------------
    # PaymentIntents
    # ------------------------------------------------------------------

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        intent = self._call(self._retrieve_intent, payment_intent_id)
        return self._intent_info(intent)

    def create_payment_intent(self, account_id: str, amount: Decimal) -> PaymentIntentInfo:
        intent = self._call(
            self._create_intent,
            amount=amount_to_minor(amount),
            currency=self.currency,
            metadata={"account_id": account_id, "type": "recharge"},
            automatic_payment_methods={"enabled": True},
        )
        return self._intent_info(intent)

    # ------------------------------------------------------------------
    # Checkout Sessions
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        account_id: str,
        amount: Decimal,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutSessionInfo:
        session = self._call(
            self._create_checkout,
            mode="payment",
            line_items=[
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": amount_to_minor(amount),
                        "product_data": {"name": "Account recharge"},
                    },
                }
            ],
            metadata={"account_id": account_id, "type": "recharge"},
            success_url=success_url or settings.checkout_success_url,
            cancel_url=cancel_url or settings.checkout_cancel_url,
        )
        return CheckoutSessionInfo(id=session["id"], url=session.get("url"))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _call(self, func, *args: Any, **kwargs: Any) -> Any:
        if not self.configured:
            raise PaymentProviderError("Stripe is not configured (STRIPE_SECRET_KEY)")
        try:
            return func(*args, **kwargs)
        except pybreaker.CircuitBreakerError as e:
            logger.warning("stripe_breaker_open", extra={"error": str(e)})
            raise PaymentProviderError("Payment provider temporarily unavailable") from e
        except stripe.StripeError as e:
            logger.warning("stripe_call_failed", extra={"error": f"{type(e).__name__}: {e}"})
            raise PaymentProviderError(str(e)) from e
        except redis.RedisError as e:
            logger.warning("stripe_breaker_storage_error", extra={"error": str(e)})
            raise PaymentProviderError("Payment provider state unavailable") from e

    @with_circuit_breaker("stripe", exclude=_BREAKER_EXCLUDE)
    def _retrieve_intent(self, payment_intent_id: str):
        return stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.secret_key)

    @with_circuit_breaker("stripe", exclude=_BREAKER_EXCLUDE)
    def _create_intent(self, **params: Any):
        return stripe.PaymentIntent.create(api_key=self.secret_key, **params)

    @with_circuit_breaker("stripe", exclude=_BREAKER_EXCLUDE)
    def _create_checkout(self, **params: Any):
        return stripe.checkout.Session.create(api_key=self.secret_key, **params)

    @staticmethod
    def _intent_info(intent) -> PaymentIntentInfo:
        metadata = intent.get("metadata") or {}
        return PaymentIntentInfo(
            id=intent["id"],
            status=intent["status"],
            amount=minor_to_amount(intent.get("amount")),
            currency=intent.get("currency") or "",
            metadata={key: metadata[key] for key in metadata.keys()},
            client_secret=intent.get("client_secret"),
        )
