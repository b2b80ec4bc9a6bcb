"""Payment-gateway adapters for refunds and payout recipients.

Paystack is the default: its charge references and ``transfer.*`` events are
what the webhook receives. Stripe is available for deployments whose
charges are Stripe PaymentIntents.
"""

from dataclasses import dataclass, field

import httpx
import stripe
import structlog

from marketplace.errors import ExternalServiceError, RateLimited, ValidationError
from marketplace.models import TransactionStatus

logger = structlog.get_logger(__name__)

# Gateway refund states collapsed onto our own
_PAYSTACK_REFUND_STATUS = {
    "processed": TransactionStatus.SUCCESS,
    "pending": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "needs-attention": TransactionStatus.PENDING,
    "failed": TransactionStatus.FAILED,
}

_STRIPE_REFUND_STATUS = {
    "succeeded": TransactionStatus.SUCCESS,
    "pending": TransactionStatus.PENDING,
    "requires_action": TransactionStatus.PENDING,
    "failed": TransactionStatus.FAILED,
    "canceled": TransactionStatus.FAILED,
}


@dataclass
class GatewayRefund:
    reference: str
    status: TransactionStatus
    raw: dict = field(default_factory=dict)


def _declined(payment_reference, refund_id, status):
    logger.warning("gateway_refund_declined", reference=payment_reference,
                   refund_id=refund_id, status=status)
    return ExternalServiceError(f"Payment gateway declined refund {refund_id}",
                                service="payment_gateway")


class PaystackGateway:
    """Refunds and transfer recipients through the Paystack REST API."""

    def __init__(self, settings, transport=None):
        self.secret_key = settings.paystack_secret_key
        self.currency = settings.currency.upper()
        self.client = httpx.Client(
            base_url=settings.paystack_base_url,
            timeout=settings.gateway_timeout,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            transport=transport,
        )

    def close(self):
        self.client.close()

    def _post(self, path: str, payload: dict) -> dict:
        if not self.secret_key:
            raise ExternalServiceError("Paystack secret key not configured",
                                       service="payment_gateway")
        try:
            response = self.client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Paystack request failed: {exc}",
                                       service="payment_gateway") from exc

        if response.status_code == 429:
            raise RateLimited("Payment gateway rate limit exceeded")
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalServiceError("Paystack returned a non-JSON response",
                                       service="payment_gateway") from exc
        if response.is_error or not body.get("status"):
            raise ExternalServiceError(
                f"Paystack {path} failed: {body.get('message') or response.status_code}",
                service="payment_gateway",
            )
        return body.get("data") or {}

    def refund(self, payment_reference: str, amount: int, reason: str,
               idempotency_key: str) -> GatewayRefund:
        # Paystack never refunds more than the transaction amount, so a retried
        # full refund is rejected rather than paid twice.
        data = self._post("/refund", {
            "transaction": payment_reference,
            "amount": amount,
            "currency": self.currency,
            "customer_note": reason[:500],
            "merchant_note": f"{idempotency_key}: {reason}"[:500],
        })
        refund_id = str(data.get("id") or "")
        status = _PAYSTACK_REFUND_STATUS.get(data.get("status"), TransactionStatus.PENDING)
        if status == TransactionStatus.FAILED:
            raise _declined(payment_reference, refund_id, data.get("status"))
        return GatewayRefund(
            reference=refund_id,
            status=status,
            raw={"id": refund_id, "status": data.get("status"), "amount": amount,
                 "transaction": payment_reference},
        )

    def create_recipient(self, seller_id: str, name: str, email: str,
                         bank_code: str = None, account_number: str = None) -> str:
        if not (bank_code and account_number):
            raise ValidationError(f"Seller {seller_id} banking details are incomplete")
        data = self._post("/transferrecipient", {
            "type": "basa",
            "name": name,
            "account_number": account_number,
            "bank_code": bank_code,
            "currency": self.currency,
            "metadata": {"seller_id": seller_id, "email": email},
        })
        code = data.get("recipient_code")
        if not code:
            raise ExternalServiceError("Paystack returned no recipient code",
                                       service="payment_gateway")
        return code


def configure_stripe(settings):
    """Process-wide stripe client settings; call once at startup."""
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.gateway_timeout)


class StripeGateway:
    """Refunds and payout recipients on Stripe."""

    def __init__(self, settings):
        self.api_key = settings.stripe_secret_key
        self.currency = settings.currency

    def close(self):
        pass

    def refund(self, payment_reference: str, amount: int, reason: str,
               idempotency_key: str) -> GatewayRefund:
        if not payment_reference or not payment_reference.startswith("pi_"):
            raise ValidationError(
                f"Payment reference {payment_reference!r} is not a Stripe PaymentIntent"
            )
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_reference,
                amount=amount,
                metadata={"reason": reason[:500]},
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.RateLimitError as exc:
            raise RateLimited("Payment gateway rate limit exceeded") from exc
        except stripe.StripeError as exc:
            logger.warning("gateway_refund_failed", reference=payment_reference,
                           error=str(exc))
            raise ExternalServiceError(f"Payment gateway refund failed: {exc}",
                                       service="payment_gateway") from exc

        status = _STRIPE_REFUND_STATUS.get(refund.status, TransactionStatus.PENDING)
        if status == TransactionStatus.FAILED:
            raise _declined(payment_reference, refund.id, refund.status)
        return GatewayRefund(
            reference=refund.id,
            status=status,
            raw={"id": refund.id, "status": refund.status, "amount": amount,
                 "payment_intent": payment_reference},
        )

    def create_recipient(self, seller_id: str, name: str, email: str,
                         bank_code: str = None, account_number: str = None) -> str:
        """Create a connected account for the seller and return its id.

        Express accounts collect their own bank details during onboarding.
        """
        try:
            account = stripe.Account.create(
                type="express",
                email=email,
                business_profile={"name": name},
                metadata={"seller_id": seller_id},
                idempotency_key=f"recipient-{seller_id}",
                api_key=self.api_key,
            )
        except stripe.RateLimitError as exc:
            raise RateLimited("Payment gateway rate limit exceeded") from exc
        except stripe.StripeError as exc:
            raise ExternalServiceError(f"Recipient creation failed: {exc}",
                                       service="payment_gateway") from exc
        return account.id


GATEWAYS = {
    "paystack": PaystackGateway,
    "stripe": StripeGateway,
}


def build_payment_gateway(settings):
    if settings.payment_provider not in GATEWAYS:
        raise ValidationError(f"Unknown payment provider '{settings.payment_provider}'")
    return GATEWAYS[settings.payment_provider](settings)
