"""
Client for the external image-generation webhook.

The webhook takes ``{"prompt", "userId"}`` and answers with
``{"imageUrl": "..."}``. One attempt per call, bounded by a total timeout.
"""

import asyncio
import logging

import aiohttp

from errors import ConfigurationError, GenerationTimeout, UpstreamError

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "The image generation service took too long to respond. Please try again in a moment."
FAILURE_MESSAGE = "Failed to generate coloring page. The AI service may be temporarily unavailable. Please try again."


class GenerationGateway:
    """Calls the image-generation webhook with aiohttp."""

    def __init__(self, webhook_url: str, timeout_seconds: float = 30.0):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    async def generate(self, prompt: str, user_id: str) -> str:
        """
        Ask the webhook for a coloring page.

        Returns:
            URL of the generated image
        Raises:
            GenerationTimeout: the webhook did not answer within the timeout
            UpstreamError: non-200 status, transport error or malformed body
            ConfigurationError: no webhook URL configured
        """
        if not self.webhook_url:
            logger.critical("GENERATION_WEBHOOK_URL is not configured")
            raise ConfigurationError("Server configuration error")

        payload = {"prompt": prompt, "userId": user_id}
        logger.info(f"Submitting prompt to generation webhook ({len(prompt)} chars) for user {user_id}")

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={"accept": "application/json"},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as response:
                    logger.debug(f"Webhook response status: {response.status}")
                    if response.status != 200:
                        text = await response.text()
                        logger.error(f"Generation webhook error: {response.status}")
                        logger.error(f"Response text: {text[:500]}")
                        raise UpstreamError(FAILURE_MESSAGE)
                    result = await response.json(content_type=None)
        except asyncio.TimeoutError:
            logger.error(f"Generation webhook timed out after {self.timeout_seconds}s")
            raise GenerationTimeout(TIMEOUT_MESSAGE)
        except aiohttp.ClientError as exc:
            logger.error(f"Generation webhook request failed: {exc}")
            raise UpstreamError(FAILURE_MESSAGE) from exc
        except ValueError as exc:
            logger.error(f"Generation webhook returned invalid JSON: {exc}")
            raise UpstreamError(FAILURE_MESSAGE) from exc

        image_url = result.get("imageUrl") if isinstance(result, dict) else None
        if not isinstance(image_url, str) or not image_url:
            logger.error(f"Generation webhook response missing imageUrl: {str(result)[:200]}")
            raise UpstreamError(FAILURE_MESSAGE)

        logger.info("✓ Coloring page generated")
        return image_url
