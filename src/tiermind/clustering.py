"""Foreign clustering. Mutually similar foreigners promote into one echo."""

from __future__ import annotations

from typing import Callable

from tiermind.models import Identity, Pattern, Tier, new_id
from tiermind.rules import RuleTable
from tiermind.similarity import extract_tone_baseline

ScoreFn = Callable[[str, Identity], float]


def repeat_visits(identity: Identity, score_fn: ScoreFn,
                  threshold: float = 0.6) -> list[Pattern]:
    """Earlier visits of ``identity`` that agree with its latest one.

    A named foreigner ("I'm Sam") keeps every visit on a single entry, so
    those visits count toward the quorum the way separate peers would.
    Each earlier note is scored against a fingerprint of the latest note.
    """
    if len(identity.patterns) < 2:
        return []
    fingerprint = Identity(
        id=identity.id, tier=identity.tier,
        tone_baseline=extract_tone_baseline(identity.latest_note),
    )
    return [
        p for p in identity.patterns[:-1]
        if p.note and score_fn(p.note, fingerprint) >= threshold
    ]


def find_agreements(text: str, peers: list[Identity], score_fn: ScoreFn,
                    threshold: float = 0.6) -> list[tuple[Identity, float]]:
    """Peers whose fingerprint scores ``text`` at or above threshold, best first."""
    if not text:
        return []
    agreeing = []
    for peer in peers:
        score = score_fn(text, peer)
        if score >= threshold:
            agreeing.append((peer, score))
    agreeing.sort(key=lambda x: (-x[1], -x[0].last_seen, x[0].id))
    return agreeing


def suggest_name(identities: list[Identity], rules: RuleTable) -> str | None:
    """First name claimed ("I'm X", "this is X", ...) in any pattern note."""
    for identity in identities:
        if identity.id != rules.anchor_id and rules.is_name(identity.id) \
                and not identity.id.startswith(("foreign-", "echo-")):
            return identity.id
        for pattern in identity.patterns:
            names = rules.extract_names(pattern.note, exclude={rules.anchor_id})
            if names:
                return names[0]
    return None


def build_echo(source: Identity, echo_id: str | None, absorbed: list[Identity],
               pattern_cap: int = 10, baseline_cap: int = 50) -> Identity:
    """New durable echo record from a foreign entry and the peers it agreed with.

    Patterns are interleaved by event time and capped; baselines are summed;
    recurrence counts add up.
    """
    members = [source] + absorbed
    patterns = sorted(
        (p for m in members for p in m.patterns), key=lambda p: p.event,
    )
    echo = Identity(
        id=echo_id or new_id("echo"),
        tier=Tier.ECHO,
        first_seen=min(m.first_seen for m in members),
        last_seen=max(m.last_seen for m in members),
        recurrence_count=sum(m.recurrence_count for m in members),
        patterns=patterns[-pattern_cap:],
        trust_links=list(source.trust_links),
        voice_hash=source.voice_hash,
    )
    for member in members:
        echo.merge_baseline(member.tone_baseline, cap=baseline_cap)
    return echo
