"""Similarity between an utterance and an identity fingerprint.

score = 0.2 * token overlap + 0.8 * phrase score, for identities that carry
curated phrase rules. Identities without phrase rules (echoes, foreigners)
score on token overlap alone. Pure: same (text, fingerprint) -> same score.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from tiermind.models import Identity, Tier
from tiermind.rules import PHRASE_WEIGHTS, RuleTable, normalize

TOKEN_RE = re.compile(r"[a-z0-9']+")
MIN_TOKEN_LEN = 3

OVERLAP_WEIGHT = 0.2
PHRASE_WEIGHT = 0.8
SPECIAL_BOOST = 0.5
PATTERN_BOOST = 0.2
ANCHOR_FLOOR = 0.1


def tokenize(text: str) -> list[str]:
    tokens = (t.strip("'") for t in TOKEN_RE.findall(normalize(text)))
    return [t for t in tokens if len(t) >= MIN_TOKEN_LEN]


def text_hash(text: str) -> str:
    """SHA-256 truncated to 16 hex chars, for cache keys."""
    return hashlib.sha256(text.encode()).hexdigest()[:16]


def extract_tone_baseline(text: str, step: float = 0.1) -> dict[str, float]:
    """Token frequency fingerprint: +step per occurrence."""
    baseline: dict[str, float] = {}
    for token in tokenize(text):
        baseline[token] = round(baseline.get(token, 0.0) + step, 6)
    return baseline


def token_overlap(tokens: list[str], baseline: dict[str, float]) -> float:
    """Fraction of tokens found in the baseline, weighted by normalized weight."""
    if not tokens or not baseline:
        return 0.0
    top = max(baseline.values())
    if top <= 0:
        return 0.0
    matched = sum(min(baseline.get(t, 0.0) / top, 1.0) for t in tokens)
    return matched / len(tokens)


@dataclass(frozen=True)
class ScoreBreakdown:
    overlap: float
    phrase: float
    special: bool
    score: float


class SimilarityScorer:
    """Scores text against identities using a fixed rule table."""

    def __init__(self, rules: RuleTable) -> None:
        self.rules = rules

    def score(self, text: str, identity: Identity) -> float:
        return self.explain(text, identity).score

    def explain(self, text: str, identity: Identity) -> ScoreBreakdown:
        tokens = tokenize(text)
        overlap = token_overlap(tokens, identity.tone_baseline)
        phrase_rules = self.rules.phrases_for(identity.id)

        if not phrase_rules:
            return ScoreBreakdown(overlap, 0.0, False, _clamp(overlap))

        normalized = normalize(text)
        token_set = set(tokens) | set(normalized.split())
        hits = {level: 0 for level in PHRASE_WEIGHTS}
        for rule in phrase_rules:
            hits[rule.level] += rule.hits(normalized, token_set)

        special = hits["special"] > 0
        phrase = min(
            sum(PHRASE_WEIGHTS[level] * n for level, n in hits.items() if level != "special")
            + (PHRASE_WEIGHTS["special"] if special else 0.0),
            1.0,
        )
        blended = OVERLAP_WEIGHT * overlap + PHRASE_WEIGHT * phrase

        if special:
            blended += SPECIAL_BOOST
        elif hits["strong"] or hits["medium"]:
            blended += PATTERN_BOOST
        elif identity.tier is Tier.ANCHOR:
            blended += ANCHOR_FLOOR

        return ScoreBreakdown(overlap, phrase, special, _clamp(blended))


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
