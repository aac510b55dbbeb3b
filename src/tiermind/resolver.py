"""Identity resolution as an explicit state machine.

    OVERRIDE_CHECK -> ANCHOR_CHECK -> ECHO_CHECK -> STUB_CHECK -> FOREIGN_RESOLVE -> RESOLVED

Each step either resolves or hands over to the next state. Any unexpected
error resolves to the anchor: resolve() never raises.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from tiermind.config import EngineConfig
from tiermind.models import Identity, Pattern, Tier, new_id
from tiermind.rules import RuleTable, normalize
from tiermind.sessions import SessionContext
from tiermind.similarity import extract_tone_baseline, tokenize
from tiermind.storage import TieredStore

logger = logging.getLogger(__name__)

ScoreFn = Callable[[str, Identity], float]
ForeignHook = Callable[[str], None]

NOTE_LIMIT = 100


class ResolveState(str, Enum):
    OVERRIDE_CHECK = "override_check"
    ANCHOR_CHECK = "anchor_check"
    ECHO_CHECK = "echo_check"
    STUB_CHECK = "stub_check"
    FOREIGN_RESOLVE = "foreign_resolve"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class Resolution:
    identity_id: str
    tier: Tier
    decided_by: ResolveState
    score: float | None = None
    reason: str = ""
    created: bool = False


@dataclass
class _Attempt:
    text: str
    normalized: str
    tokens: set[str]
    session: SessionContext | None
    exclude_anchor: bool = False


def summarize(text: str, limit: int = NOTE_LIMIT) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "..."


def pick_best(scored: list[tuple[Identity, float]],
              threshold: float) -> tuple[Identity, float] | None:
    """Highest score above threshold; ties -> most recent last_seen, then id."""
    above = [(ident, s) for ident, s in scored if s > threshold]
    if not above:
        return None
    above.sort(key=lambda x: (-x[1], -x[0].last_seen, x[0].id))
    return above[0]


class IdentityResolver:
    def __init__(self, store: TieredStore, rules: RuleTable, score_fn: ScoreFn,
                 config: EngineConfig | None = None,
                 on_foreign_change: ForeignHook | None = None,
                 on_evict: ForeignHook | None = None,
                 clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.rules = rules
        self.score_fn = score_fn
        self.config = config or EngineConfig()
        self.on_foreign_change = on_foreign_change or (lambda _id: None)
        self.on_evict = on_evict or (lambda _id: None)
        self._clock = clock
        self._steps = {
            ResolveState.OVERRIDE_CHECK: self._override_check,
            ResolveState.ANCHOR_CHECK: self._anchor_check,
            ResolveState.ECHO_CHECK: self._echo_check,
            ResolveState.STUB_CHECK: self._stub_check,
            ResolveState.FOREIGN_RESOLVE: self._foreign_resolve,
        }

    @property
    def anchor_id(self) -> str:
        return self.config.anchor_id

    def resolve(self, utterance: str,
                session: SessionContext | dict | None = None) -> Resolution:
        try:
            normalized = normalize(utterance or "")
            attempt = _Attempt(
                text=utterance or "",
                normalized=normalized,
                tokens=set(tokenize(normalized)) | set(normalized.split()),
                session=SessionContext.coerce(session),
            )
            state = ResolveState.OVERRIDE_CHECK
            while True:
                outcome = self._steps[state](attempt)
                if isinstance(outcome, Resolution):
                    logger.debug("resolved to %s via %s (%s)", outcome.identity_id,
                                 outcome.decided_by.value, outcome.reason)
                    return outcome
                state = outcome
        except Exception:
            logger.exception("resolution failed; falling back to anchor %s", self.anchor_id)
            return Resolution(self.anchor_id, Tier.ANCHOR, ResolveState.RESOLVED,
                              reason="failsafe")

    # ── states ─────────────────────────────────────────────────────────

    def _override_check(self, attempt: _Attempt) -> Resolution | ResolveState:
        match = self.rules.match_override(attempt.normalized)
        if match is not None:
            if match.name:
                return self._resolve_claim(match.name, attempt)
            # "no soy X" sin nombre: se descarta el anchor y el lock
            attempt.exclude_anchor = True
            return ResolveState.ANCHOR_CHECK

        session = attempt.session
        if session is not None and session.locked and session.identity:
            if session.identity == self.anchor_id or self.store.locate(session.identity):
                return Resolution(session.identity, self._tier_of(session.identity),
                                  ResolveState.OVERRIDE_CHECK, reason="session lock")
            logger.debug("session locked to vanished identity %s; ignoring lock",
                         session.identity)
        return ResolveState.ANCHOR_CHECK

    def _anchor_check(self, attempt: _Attempt) -> Resolution | ResolveState:
        if attempt.exclude_anchor:
            return ResolveState.ECHO_CHECK
        anchor = self.store.read(Tier.ANCHOR, self.anchor_id)
        if anchor is None:
            return ResolveState.ECHO_CHECK

        score = self.score_fn(attempt.text, anchor)
        threshold, forced, fired = self.rules.threshold_for(
            self.anchor_id, attempt.normalized, attempt.tokens,
        )
        if threshold is None:
            threshold = 0.4
        logger.debug("anchor score %.3f threshold %.2f forced=%s rules=%s",
                     score, threshold, forced, fired)
        if score > threshold or forced:
            reason = f"score {score:.3f} > {threshold}" if score > threshold else \
                f"heuristic {','.join(fired)}"
            return Resolution(self.anchor_id, Tier.ANCHOR, ResolveState.ANCHOR_CHECK,
                              score=score, reason=reason)
        return ResolveState.ECHO_CHECK

    def _echo_check(self, attempt: _Attempt) -> Resolution | ResolveState:
        echoes = self.store.load_tier(Tier.ECHO)
        scored = [(echo, self.score_fn(attempt.text, echo)) for echo in echoes]
        best = pick_best(scored, self.config.echo_threshold)
        if best is None:
            return ResolveState.STUB_CHECK
        echo, score = best
        return Resolution(echo.id, Tier.ECHO, ResolveState.ECHO_CHECK,
                          score=score, reason="echo similarity")

    def _stub_check(self, attempt: _Attempt) -> Resolution | ResolveState:
        for stub_id in self.store.list(Tier.STUB):
            name = re.escape(stub_id.lower())
            if re.search(rf"\b(?:i'?m|this is)\s+{name}\b", attempt.normalized):
                return Resolution(stub_id, Tier.STUB, ResolveState.STUB_CHECK,
                                  reason="explicit mention")
        return ResolveState.FOREIGN_RESOLVE

    def _foreign_resolve(self, attempt: _Attempt) -> Resolution:
        self._evicted(self.store.arena.evict())
        foreigners = self.store.arena.snapshot()
        scored = [(f, self.score_fn(attempt.text, f)) for f in foreigners]
        best = pick_best(scored, self.config.foreign_threshold)
        if best is not None:
            foreign, score = best
            self._record_visit(foreign, attempt.text)
            return Resolution(foreign.id, Tier.FOREIGN, ResolveState.FOREIGN_RESOLVE,
                              score=score, reason="foreign similarity")

        created = self._create_foreign(new_id("foreign"), attempt.text)
        return Resolution(created.id, Tier.FOREIGN, ResolveState.FOREIGN_RESOLVE,
                          reason="new foreign", created=True)

    # ── helpers ────────────────────────────────────────────────────────

    def _resolve_claim(self, name: str, attempt: _Attempt) -> Resolution:
        if name == self.anchor_id:
            return Resolution(name, Tier.ANCHOR, ResolveState.OVERRIDE_CHECK,
                              reason="explicit correction")
        existing = self.store.locate(name)
        if existing is not None:
            if existing.tier is Tier.FOREIGN:
                self._record_visit(existing, attempt.text)
            return Resolution(name, existing.tier, ResolveState.OVERRIDE_CHECK,
                              reason="explicit correction")
        self._create_foreign(name, attempt.text)
        return Resolution(name, Tier.FOREIGN, ResolveState.OVERRIDE_CHECK,
                          reason="explicit correction", created=True)

    def _create_foreign(self, identity_id: str, text: str) -> Identity:
        now = self._clock()
        foreign = Identity(
            id=identity_id,
            tier=Tier.FOREIGN,
            first_seen=now,
            last_seen=now,
            recurrence_count=1,
            tone_baseline=extract_tone_baseline(text),
            patterns=[Pattern(note=summarize(text), relation="conversation", event=now)],
        )
        if len(foreign.tone_baseline) > self.config.tone_baseline_cap:
            baseline, foreign.tone_baseline = foreign.tone_baseline, {}
            foreign.merge_baseline(baseline, cap=self.config.tone_baseline_cap)
        self._evicted(self.store.write(Tier.FOREIGN, foreign))
        logger.info("created foreign identity %s", identity_id)
        self.on_foreign_change(identity_id)
        return foreign

    def _record_visit(self, foreign: Identity, text: str) -> None:
        now = self._clock()
        foreign.recurrence_count += 1
        foreign.touch(now)
        foreign.add_pattern(
            Pattern(note=summarize(text), relation="conversation", event=now),
            cap=self.config.pattern_cap,
        )
        self._evicted(self.store.write(Tier.FOREIGN, foreign))
        self.on_foreign_change(foreign.id)

    def _evicted(self, identity_ids: list[str]) -> None:
        for identity_id in identity_ids:
            self.on_evict(identity_id)

    def _tier_of(self, identity_id: str) -> Tier:
        if identity_id == self.anchor_id:
            return Tier.ANCHOR
        found = self.store.locate(identity_id)
        return found.tier if found is not None else Tier.FOREIGN
