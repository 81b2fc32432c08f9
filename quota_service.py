"""
Quota decision logic for coloring page generation.
Determines allowed usage based on the user's entitlement record.
"""

import logging
from typing import Any, Dict, Tuple

from config import DEFAULT_FREE_GENERATION_LIMIT
from entitlement_store import Entitlement, EntitlementStore

logger = logging.getLogger(__name__)

# Fallback only; the app passes Settings.free_generation_limit.
FREE_GENERATION_LIMIT = DEFAULT_FREE_GENERATION_LIMIT

# The UI matches on this exact text to open the upgrade dialog.
QUOTA_EXCEEDED_MESSAGE = "Free generation limit reached. Please upgrade to Pro."


def usage_info(entitlement: Entitlement, free_limit: int = FREE_GENERATION_LIMIT) -> Dict[str, Any]:
    """Summarize where a user stands against the free tier."""
    if entitlement.is_subscribed:
        return {
            "tier": "pro",
            "generation_count": entitlement.generation_count,
            "free_limit": free_limit,
            "remaining_free": None,
            "next_action": None,
        }

    remaining = max(0, free_limit - entitlement.generation_count)
    return {
        "tier": "free" if remaining > 0 else "exhausted",
        "generation_count": entitlement.generation_count,
        "free_limit": free_limit,
        "remaining_free": remaining,
        "next_action": None if remaining > 0 else "upgrade",
    }


def check_quota(
    entitlement: Entitlement,
    free_limit: int = FREE_GENERATION_LIMIT,
) -> Tuple[bool, str, Dict[str, Any]]:
    """
    Check if the user may generate another image.

    Returns:
        (allowed, message, usage_info)
    """
    info = usage_info(entitlement, free_limit)

    if entitlement.is_subscribed:
        return True, "Pro plan: unlimited generations.", info

    if entitlement.generation_count >= free_limit:
        logger.info(
            f"Free limit reached for user {entitlement.user_id} "
            f"({entitlement.generation_count}/{free_limit})"
        )
        return False, QUOTA_EXCEEDED_MESSAGE, info

    remaining = info["remaining_free"]
    return True, f"You have {remaining} free generation(s) remaining.", info


def consume_quota(store: EntitlementStore, entitlement: Entitlement) -> bool:
    """
    Charge one free-tier generation.
    Pro users are never charged. Returns True if the counter moved.
    """
    if entitlement.is_subscribed:
        return False
    return store.increment_generation_count(entitlement.user_id)
