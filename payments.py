"""
Payment gateway port and adapters.

- FakeGateway: configurable in-process gateway for development and tests
- StripeGateway: captures PaymentIntents through the stripe SDK

get_gateway() returns the active adapter, chosen by PAYMENT_GATEWAY
("fake" or "stripe") unless overridden with set_gateway().
"""
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4

import stripe
import structlog

logger = structlog.get_logger(__name__)

PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "fake").lower()
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")


@dataclass(frozen=True)
class ChargeResult:
    """Result of a payment capture attempt."""

    success: bool
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    status: Optional[str] = None
    failure_reason: Optional[str] = None


class PaymentGateway(ABC):
    """Synchronous capture/refund contract every adapter implements."""

    name = "gateway"

    @abstractmethod
    def charge(self, amount_cents: int, currency: str, payment_method: str, idempotency_key: str) -> ChargeResult:
        """Capture amount_cents against the payment method token."""

    @abstractmethod
    def refund(self, transaction_id: str, amount_cents: int) -> RefundResult:
        """Refund a previous capture."""


class FakeGateway(PaymentGateway):
    """Gateway that never leaves the process; succeeds unless told otherwise."""

    name = "fake"

    def __init__(self) -> None:
        self.should_succeed = True
        self.failure_reason = "Card declined"
        self.calls: List[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def charge(self, amount_cents, currency, payment_method, idempotency_key):
        self.calls.append({
            "method": "charge",
            "amount_cents": amount_cents,
            "currency": currency,
            "payment_method": payment_method,
            "idempotency_key": idempotency_key,
        })
        if self.should_succeed:
            return ChargeResult(success=True, transaction_id=f"fake_txn_{uuid4().hex[:12]}", status="succeeded")
        return ChargeResult(success=False, status="failed", failure_reason=self.failure_reason)

    def refund(self, transaction_id, amount_cents):
        self.calls.append({"method": "refund", "transaction_id": transaction_id, "amount_cents": amount_cents})
        if self.should_succeed:
            return RefundResult(success=True, refund_id=f"fake_ref_{uuid4().hex[:12]}", status="succeeded")
        return RefundResult(success=False, failure_reason=self.failure_reason)


class StripeGateway(PaymentGateway):
    """Captures payments as confirmed PaymentIntents."""

    name = "stripe"

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def charge(self, amount_cents, currency, payment_method, idempotency_key):
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount_cents,
                currency=currency,
                payment_method=payment_method,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.info("Stripe declined charge", code=e.code, idempotency_key=idempotency_key)
            return ChargeResult(success=False, status="failed", failure_reason=e.user_message or "Card declined")
        except stripe.StripeError as e:
            logger.warning("Stripe charge error", error=str(e), idempotency_key=idempotency_key)
            return ChargeResult(success=False, status="error", failure_reason=e.user_message or "Payment failed")

        if intent.status != "succeeded":
            return ChargeResult(success=False, transaction_id=intent.id, status=intent.status, failure_reason="Payment failed")
        return ChargeResult(success=True, transaction_id=intent.id, status=intent.status)

    def refund(self, transaction_id, amount_cents):
        try:
            refund = stripe.Refund.create(api_key=self.api_key, payment_intent=transaction_id, amount=amount_cents)
        except stripe.StripeError as e:
            return RefundResult(success=False, failure_reason=e.user_message or str(e))
        return RefundResult(success=refund.status in ("succeeded", "pending"), refund_id=refund.id, status=refund.status)


_current_gateway: Optional[PaymentGateway] = None


def _default_gateway() -> PaymentGateway:
    if PAYMENT_GATEWAY == "stripe":
        return StripeGateway(STRIPE_SECRET_KEY)
    return FakeGateway()


def get_gateway() -> PaymentGateway:
    """Return the active payment gateway, creating the configured default on first use."""
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = _default_gateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
