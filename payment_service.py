"""
Payment verification and Pro upgrade.

The checkout widget hands the browser three values signed by Razorpay; the
browser relays them here. We recompute the signature with our key secret and,
if it matches, flip the user's entitlement to Pro.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict

from entitlement_store import EntitlementStore, PaymentAlreadyClaimed
from errors import ConfigurationError, ConflictError, NotFoundError, SignatureMismatch
from razorpay_client import RazorpayClient
from schemas import CreateOrderRequest, VerifyPaymentRequest, parse_body

logger = logging.getLogger(__name__)

UPGRADED_MESSAGE = "Payment verified and user upgraded to Pro!"
ALREADY_APPLIED_MESSAGE = "Payment already verified. Your Pro plan is active."


@dataclass
class PaymentResult:
    message: str
    already_applied: bool = False


def verify_signature(order_id: str, payment_id: str, secret_key: str, submitted_signature: str) -> bool:
    """
    Check a Razorpay payment signature.

    The expected value is hex(HMAC-SHA256(secret_key, "order_id|payment_id")).
    Comparison is exact and constant-time. A mismatch returns False; a missing
    secret is a deployment problem and raises ConfigurationError instead.
    """
    if not secret_key:
        raise ConfigurationError("Server configuration error")

    expected = hmac.new(
        secret_key.encode("utf-8"),
        f"{order_id}|{payment_id}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), submitted_signature.encode("utf-8"))


def verify_payment(store: EntitlementStore, secret_key: str, body: Any) -> PaymentResult:
    """
    Verify a payment callback and upgrade the user.

    Safe to repeat: replaying the same payment for the same user succeeds
    without touching the record again.
    """
    req = parse_body(VerifyPaymentRequest, body, "Missing required fields")
    logger.info(f"Payment verification started for user: {req.userId}")

    if not secret_key:
        logger.critical("RAZORPAY_KEY_SECRET not found in environment")
        raise ConfigurationError("Server configuration error")

    if not verify_signature(req.razorpay_order_id, req.razorpay_payment_id, secret_key, req.razorpay_signature):
        logger.warning(f"Invalid payment signature for user {req.userId}, order {req.razorpay_order_id}")
        raise SignatureMismatch("Invalid payment signature")

    logger.info("✓ Payment signature verified")

    try:
        upgraded = store.set_subscribed(req.userId, req.razorpay_order_id, req.razorpay_payment_id)
    except PaymentAlreadyClaimed as exc:
        logger.warning(
            f"Payment {req.razorpay_payment_id} replayed for user {req.userId}, "
            f"already applied to {exc.owner_id}"
        )
        raise

    if not upgraded:
        logger.info(f"Payment {req.razorpay_payment_id} already applied to user {req.userId}")
        return PaymentResult(message=ALREADY_APPLIED_MESSAGE, already_applied=True)

    logger.info(f"✓ User {req.userId} upgraded to Pro")
    return PaymentResult(message=UPGRADED_MESSAGE)


async def create_order(
    store: EntitlementStore,
    razorpay: RazorpayClient,
    body: Any,
    amount: int,
    currency: str,
) -> Dict[str, Any]:
    """Create the one-time Razorpay order a user pays to go Pro."""
    req = parse_body(CreateOrderRequest, body, "Invalid input for creating order.")

    entitlement = store.get_entitlement(req.userId)
    if entitlement is None:
        raise NotFoundError("User profile not found.")
    if entitlement.is_subscribed:
        raise ConflictError("Your account is already on Pro.")

    order = await razorpay.create_order(req.userId, amount, currency)
    return {
        "success": True,
        "message": "Order created successfully.",
        "orderId": order["id"],
        "amount": int(order.get("amount", amount)),
        "currency": order.get("currency", currency),
        "keyId": razorpay.key_id,
    }
