"""Trust decay. Links that aren't exercised fade away."""

from __future__ import annotations

import math
import time

from tiermind.models import Identity, TrustLink

# Half-life en segundos: la fuerza se reduce a la mitad cada HALF_LIFE
DEFAULT_HALF_LIFE = 30 * 24 * 3600  # 30 días


def compute_decay(link: TrustLink, now: float | None = None,
                  half_life: float = DEFAULT_HALF_LIFE,
                  since: float | None = None) -> float:
    """Strength after exponential decay.

    Fórmula: strength * 2^(-elapsed / half_life)
    elapsed counts from the later of last_interaction and ``since`` (the
    previous decay pass), so repeated passes don't compound.
    """
    if now is None:
        now = time.time()

    start = link.last_interaction if since is None else max(link.last_interaction, since)
    elapsed = now - start
    if elapsed <= 0:
        return link.strength

    decayed = link.strength * math.pow(2, -elapsed / half_life)
    return max(0.0, min(1.0, decayed))


def decay_links(identity: Identity, now: float | None = None,
                half_life: float = DEFAULT_HALF_LIFE,
                death_threshold: float = 0.01,
                since: float | None = None) -> tuple[list[TrustLink], list[TrustLink]]:
    """Decay every link of an identity in place.

    Returns:
        (alive, dead) - links kept and links that fell under the threshold
    """
    now = time.time() if now is None else now
    alive = []
    dead = []

    for link in identity.trust_links:
        link.strength = compute_decay(link, now, half_life, since)
        if link.strength < death_threshold:
            dead.append(link)
        else:
            alive.append(link)

    identity.trust_links = sorted(alive, key=lambda l: l.strength, reverse=True)
    return alive, dead
