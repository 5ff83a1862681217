import logging
from typing import Any, Dict, List

from errors import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

MAX_UPLINE_DEPTH = 2


def resolve_chain(store, seller_id, max_depth: int = MAX_UPLINE_DEPTH) -> List[Dict[str, Any]]:
    """
    walk the sponsorship chain starting at the seller.
    returns [{"id", "name", "level"}, ...] where level 0 is the seller
    and levels 1..max_depth are successive uplines.

    the chain ends early (no error) when:
      - a profile has no upline
      - a profile row is missing / soft-deleted
      - an id repeats (cycle in the data)
    """
    chain: List[Dict[str, Any]] = []
    visited = set()
    current = seller_id
    level = 0

    while current is not None and level <= max_depth:
        if current in visited:
            logger.warning(
                "upline cycle detected, chain stops",
                extra={"seller_id": seller_id, "repeated_id": current, "level": level},
            )
            break
        visited.add(current)

        profile = store.get_profile(current)
        if profile is None:
            # deleted / unknown profile just shortens the chain
            logger.info(
                "profile %s not found while resolving chain for %s", current, seller_id
            )
            break

        chain.append(
            {
                "id": profile["id"],
                "name": profile.get("full_name") or "Unknown",
                "level": level,
            }
        )
        current = profile.get("upline_id")
        level += 1

    return chain


def assign_upline(store, child_id, upline_id) -> Dict[str, Any]:
    """
    link `child_id` under `upline_id` (admin action).
    rules:
      - both profiles must exist
      - a profile cannot be its own upline
      - the upline is set once and cannot be overwritten
      - the link must not create a cycle
    """
    if child_id == upline_id:
        raise InvalidStateError("A profile cannot be its own upline.")

    with store.transaction():
        child = store.get_profile(child_id)
        if child is None:
            raise NotFoundError(f"Profile {child_id} not found")
        if store.get_profile(upline_id) is None:
            raise NotFoundError(f"Profile {upline_id} not found")

        existing = child.get("upline_id")
        if existing is not None:
            raise InvalidStateError(
                f"Profile {child_id} already has an upline ({existing})."
            )

        # walk up from the new upline; we must never reach the child
        visited = set()
        current = upline_id
        while current is not None and current not in visited:
            if current == child_id:
                raise InvalidStateError(
                    f"Linking {child_id} under {upline_id} would create a cycle."
                )
            visited.add(current)
            profile = store.get_profile(current)
            current = profile.get("upline_id") if profile else None

        store.set_profile_upline(child_id, upline_id)

    logger.info("profile %s linked under upline %s", child_id, upline_id)
    return {"status": "linked", "child_id": child_id, "upline_id": upline_id}
