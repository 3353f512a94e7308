"""
Client Matching
Links a campaign to the billing client whose name is its longest prefix.
"""

from typing import Optional, Sequence, TypeVar

T = TypeVar('T')


def match_client(campaign_name: str, candidates: Sequence[T]) -> Optional[T]:
    """
    Find the billing client a campaign belongs to.

    Candidates are tried longest name first so that "JAE Automation" wins
    over "JAE" for "JAE Automation - Fall Promo". Ties keep the input
    order. No match returns None; the caller must not create a client.

    Args:
        campaign_name: Campaign name from the dropped file
        candidates: Objects with a ``name`` attribute

    Returns:
        The matching candidate or None
    """
    if not campaign_name:
        return None

    ordered = sorted(candidates, key=lambda c: len(c.name or ''), reverse=True)
    for candidate in ordered:
        if candidate.name and campaign_name.startswith(candidate.name):
            return candidate
    return None
