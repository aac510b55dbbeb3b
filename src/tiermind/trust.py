"""Trust graph: bounded per-identity adjacency list of weighted links.

After every mutation links are sorted by strength (desc) and truncated to
the cap; the weakest relationships silently drop off.
"""

from __future__ import annotations

import time

from tiermind.models import TRUST_LINK_CAP, Identity, TrustLink

DEFAULT_BUMP = 0.1


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def find_link(identity: Identity, target_id: str, relationship: str) -> TrustLink | None:
    for link in identity.trust_links:
        if link.target_id == target_id and link.relationship == relationship:
            return link
    return None


def prune(identity: Identity, cap: int = TRUST_LINK_CAP) -> list[TrustLink]:
    """Sort by strength desc (stable), keep the top ``cap``. Returns dropped links."""
    identity.trust_links.sort(key=lambda link: link.strength, reverse=True)
    dropped = identity.trust_links[cap:]
    del identity.trust_links[cap:]
    return dropped


def add_link(identity: Identity, target_id: str, relationship: str,
             strength: float = 0.5, bump: float = DEFAULT_BUMP,
             cap: int = TRUST_LINK_CAP, now: float | None = None) -> TrustLink | None:
    """Add an edge, or bump an existing (target, relationship) edge.

    Returns the link, or None if it was pruned straight away for being weakest.
    """
    now = time.time() if now is None else now
    link = find_link(identity, target_id, relationship)
    if link is not None:
        link.strength = _clamp(link.strength + bump)
        link.last_interaction = now
    else:
        link = TrustLink(
            target_id=target_id,
            relationship=relationship,
            strength=_clamp(strength),
            created=now,
            last_interaction=now,
        )
        identity.trust_links.append(link)
    dropped = prune(identity, cap)
    return None if any(d is link for d in dropped) else link


def update_strength(identity: Identity, target_id: str, relationship: str,
                    delta: float, cap: int = TRUST_LINK_CAP,
                    now: float | None = None) -> TrustLink | None:
    link = find_link(identity, target_id, relationship)
    if link is None:
        return None
    link.strength = _clamp(link.strength + delta)
    link.last_interaction = time.time() if now is None else now
    prune(identity, cap)
    return link


def trusted(identity: Identity, relationship: str | None = None) -> list[TrustLink]:
    links = [
        link for link in identity.trust_links
        if relationship is None or link.relationship == relationship
    ]
    return sorted(links, key=lambda link: link.strength, reverse=True)


def remove_links_to(identity: Identity, target_id: str) -> int:
    before = len(identity.trust_links)
    identity.trust_links = [l for l in identity.trust_links if l.target_id != target_id]
    return before - len(identity.trust_links)
