"""
Minimal Razorpay Orders API client.
Only order creation is needed; payment capture happens in the checkout widget.
"""

import asyncio
import logging
import secrets
from typing import Any, Dict

import aiohttp

from errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

MISSING_KEYS_MESSAGE = "Razorpay API keys are not configured on the server."


class RazorpayClient:
    """Creates one-time orders for the Pro upgrade."""

    def __init__(self, key_id: str, key_secret: str, api_base: str = "https://api.razorpay.com/v1",
                 timeout_seconds: float = 20.0):
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_order(self, user_id: str, amount: int, currency: str = "INR") -> Dict[str, Any]:
        """Create an order and return Razorpay's order object."""
        if not self.configured:
            logger.critical(MISSING_KEYS_MESSAGE)
            raise ConfigurationError(MISSING_KEYS_MESSAGE)

        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": f"receipt_{secrets.token_hex(6)}",
            "notes": {"user_id": user_id},
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.api_base}/orders",
                    json=payload,
                    auth=aiohttp.BasicAuth(self.key_id, self.key_secret),
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as response:
                    body = await response.json(content_type=None)
                    if response.status != 200:
                        error = body.get("error", {}) if isinstance(body, dict) else {}
                        description = error.get("description") or "Failed to create order with Razorpay."
                        logger.error(f"Razorpay order creation failed: {response.status} {description}")
                        raise UpstreamError(description)
        except asyncio.TimeoutError:
            logger.error("Razorpay order creation timed out")
            raise UpstreamError("Payment gateway timed out. Please try again.")
        except aiohttp.ClientError as exc:
            logger.error(f"Razorpay request failed: {exc}")
            raise UpstreamError("Failed to create order with Razorpay.") from exc
        except ValueError as exc:
            logger.error(f"Razorpay returned invalid JSON: {exc}")
            raise UpstreamError("Failed to create order with Razorpay.") from exc

        if not isinstance(body, dict) or not body.get("id"):
            raise UpstreamError("Failed to create order with Razorpay.")

        logger.info(f"Razorpay order {body['id']} created for user {user_id}")
        return body
