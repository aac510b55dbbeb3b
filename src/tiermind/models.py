"""Core data models. An Identity has a tier and a lifecycle."""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from tiermind.errors import MalformedRecord

PATTERN_CAP = 10
TRUST_LINK_CAP = 10


class Tier(str, Enum):
    ANCHOR = "anchor"    # la identidad primaria, permanente
    STUB = "stub"        # alias curados a mano
    ECHO = "echo"        # promovidos desde foreign
    FOREIGN = "foreign"  # solo RAM, efímeros

    @property
    def durable(self) -> bool:
        return self is not Tier.FOREIGN


@dataclass
class Pattern:
    """Resumen de una interacción."""

    note: str = "New interaction"
    relation: str = "general"
    emotional: str = "neutral"
    event: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "note": self.note,
            "relation": self.relation,
            "emotional": self.emotional,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Pattern:
        return cls(
            note=str(data.get("note", "New interaction")),
            relation=str(data.get("relation", "general")),
            emotional=str(data.get("emotional", "neutral")),
            event=float(data.get("event", time.time())),
        )


@dataclass
class TrustLink:
    """Directed, weighted edge between two identities."""

    target_id: str
    relationship: str
    strength: float = 0.5
    created: float = field(default_factory=time.time)
    last_interaction: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, str]:
        return (self.target_id, self.relationship)

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "relationship": self.relationship,
            "strength": self.strength,
            "created": self.created,
            "last_interaction": self.last_interaction,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TrustLink:
        return cls(
            target_id=str(data["target_id"]),
            relationship=str(data["relationship"]),
            strength=max(0.0, min(1.0, float(data.get("strength", 0.5)))),
            created=float(data.get("created", time.time())),
            last_interaction=float(data.get("last_interaction", time.time())),
        )


@dataclass
class Identity:
    """Una identidad persistente (o efímera, si es foreign)."""

    id: str
    tier: Tier = Tier.FOREIGN
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    recurrence_count: int = 0
    tone_baseline: dict[str, float] = field(default_factory=dict)
    patterns: list[Pattern] = field(default_factory=list)
    trust_links: list[TrustLink] = field(default_factory=list)
    voice_hash: str | None = None

    def add_pattern(self, pattern: Pattern, cap: int = PATTERN_CAP) -> None:
        """Append a pattern; the oldest ones fall off once over ``cap``."""
        self.patterns.append(pattern)
        if len(self.patterns) > cap:
            self.patterns = self.patterns[-cap:]

    def touch(self, now: float | None = None) -> None:
        self.last_seen = time.time() if now is None else now

    def merge_baseline(self, baseline: dict[str, float], cap: int = 50) -> None:
        """Sum token weights in, keeping only the ``cap`` heaviest tokens."""
        merged = dict(self.tone_baseline)
        for token, weight in baseline.items():
            merged[token] = round(merged.get(token, 0.0) + weight, 6)
        if len(merged) > cap:
            heaviest = sorted(merged.items(), key=lambda x: (-x[1], x[0]))[:cap]
            merged = dict(heaviest)
        self.tone_baseline = merged

    @property
    def latest_note(self) -> str:
        return self.patterns[-1].note if self.patterns else ""

    def copy(self) -> Identity:
        return copy.deepcopy(self)

    # ── serialization ──────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tier": self.tier.value,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "recurrence_count": self.recurrence_count,
            "tone_baseline": dict(self.tone_baseline),
            "patterns": [p.to_dict() for p in self.patterns],
            "trust_links": [link.to_dict() for link in self.trust_links],
            "voice_hash": self.voice_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Identity:
        try:
            return cls(
                id=str(data["id"]),
                tier=Tier(data["tier"]),
                first_seen=float(data["first_seen"]),
                last_seen=float(data["last_seen"]),
                recurrence_count=int(data.get("recurrence_count", 0)),
                tone_baseline={
                    str(k): float(v)
                    for k, v in (data.get("tone_baseline") or {}).items()
                },
                patterns=[Pattern.from_dict(p) for p in data.get("patterns") or []],
                trust_links=[
                    TrustLink.from_dict(t) for t in data.get("trust_links") or []
                ],
                voice_hash=data.get("voice_hash"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise MalformedRecord(f"invalid identity record: {exc}") from exc


@dataclass
class Trace:
    """Registro de una operación del engine (observabilidad)."""

    operation: str
    input_text: str = ""
    output_text: str = ""
    duration_ms: float | None = None
    metadata: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"
