"""
Coloring page generation with free-tier enforcement.

Flow per request: validate -> quota check -> generate -> persist -> done.
Any step can fail with a StudioError carrying the user-facing message.
"""

import logging
from dataclasses import dataclass
from typing import Any

from entitlement_store import EntitlementStore
from errors import NotFoundError, QuotaExceededError
from generation_gateway import GenerationGateway
from quota_service import FREE_GENERATION_LIMIT, check_quota, consume_quota
from schemas import parse_generate_request

logger = logging.getLogger(__name__)

READY_MESSAGE = "✅ Coloring page ready!"


@dataclass
class GenerationResult:
    image_url: str
    prompt: str
    charged: bool

    def to_response(self) -> dict:
        return {
            "success": True,
            "message": READY_MESSAGE,
            "image": {"imageUrl": self.image_url, "prompt": self.prompt},
            "prompt": self.prompt,
        }


async def generate_image(
    store: EntitlementStore,
    gateway: GenerationGateway,
    body: Any,
    free_limit: int = FREE_GENERATION_LIMIT,
) -> GenerationResult:
    """
    Generate a coloring page for a user, respecting the free-tier limit.

    The artifact is saved before the counter is bumped; if the process dies
    in between the user keeps the image without being charged.
    """
    req = parse_generate_request(body)

    entitlement = store.get_entitlement(req.userId)
    if entitlement is None:
        logger.warning(f"Generation requested for unknown user {req.userId}")
        raise NotFoundError("User profile not found.")

    # Two concurrent requests at count == limit - 1 can both pass this check.
    allowed, message, _ = check_quota(entitlement, free_limit)
    if not allowed:
        raise QuotaExceededError(message)

    image_url = await gateway.generate(req.prompt, req.userId)

    store.record_artifact(req.userId, image_url, req.prompt)
    charged = consume_quota(store, entitlement)
    logger.info(
        f"✓ Image stored for user {req.userId} "
        f"({'pro' if entitlement.is_subscribed else 'free'}, charged={charged})"
    )

    return GenerationResult(image_url=image_url, prompt=req.prompt, charged=charged)
