from typing import Callable, Dict, Hashable, List, Optional

from errors import ReferralConflict
from models import Beneficiaries


def check_referral_link(child_id, parent_id, get_parent: Callable) -> None:
    """
    validate that `parent_id` may become the referrer of `child_id`.
    get_parent: callable user_id -> that user's referrer (or None)

    rules:
      - a user cannot refer themselves
      - a child can only have ONE referrer (cannot be overwritten)
      - adding the edge child -> parent must NOT create a cycle
    raises ReferralConflict on any violation.
    """
    if parent_id == child_id:
        raise ReferralConflict(f"User {child_id} cannot refer themselves.")

    existing = get_parent(child_id)
    if existing is not None:
        raise ReferralConflict(f"User {child_id} already has a referrer ({existing}).")

    # walk UP from parent; if we ever hit child, parent is a descendant of child
    current = parent_id
    seen = set()
    while current is not None:
        if current == child_id:
            raise ReferralConflict(
                f"Registering {parent_id} as referrer of {child_id} would create a cycle."
            )
        if current in seen:
            # the graph is already broken above parent; refuse to extend it
            raise ReferralConflict(f"Referral chain above {parent_id} contains a cycle.")
        seen.add(current)
        current = get_parent(current)


def register_referral(child_id, parent_id, ref: Dict[Hashable, Hashable]) -> None:
    """
    register that `parent_id` referred `child_id`.
    ref: dict mapping child_id -> parent_id
    """
    check_referral_link(child_id, parent_id, ref.get)
    ref[child_id] = parent_id


def get_lineage(user_id, get_parent: Callable, max_levels: int = 2) -> List[Optional[Hashable]]:
    """
    return [L1, L2, ...] up to max_levels above user_id.
    if there is no referrer at some level, the rest are None.
    """
    lineage: List[Optional[Hashable]] = []
    current = user_id

    for _ in range(max_levels):
        parent = get_parent(current)
        if parent is None:
            break
        lineage.append(parent)
        current = parent

    lineage.extend([None] * (max_levels - len(lineage)))
    return lineage


def resolve_beneficiaries(purchaser_id, get_parent: Callable) -> Beneficiaries:
    """
    tier1 = purchaser's referrer, tier2 = tier1's referrer.
    """
    tier1, tier2 = get_lineage(purchaser_id, get_parent, max_levels=2)
    return Beneficiaries(tier1=tier1, tier2=tier2)
