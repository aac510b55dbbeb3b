"""Declarative classification rules.

Rules are data: a list of tagged dicts (``type`` = override | threshold |
phrase) that compile into a :class:`RuleTable`. Patterns may use the
``{anchor}`` placeholder, which is replaced by the anchor id at load time.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

PHRASE_WEIGHTS = {"strong": 0.5, "medium": 0.3, "context": 0.4, "special": 0.8}


@dataclass(frozen=True)
class OverrideRule:
    kind: str                 # "negation" | "correction"
    pattern: re.Pattern
    group: int | None = None  # capture group holding a name


@dataclass(frozen=True)
class ThresholdRule:
    identity: str
    threshold: float
    name: str = ""
    any_terms: tuple[str, ...] = ()
    all_terms: tuple[tuple[str, ...], ...] = ()
    forces_match: bool = False

    @property
    def unconditional(self) -> bool:
        return not self.any_terms and not self.all_terms

    def fires(self, text: str, tokens: set[str]) -> bool:
        if self.unconditional:
            return True
        if any(_contains(text, tokens, term) for term in self.any_terms):
            return True
        return any(
            all(_contains(text, tokens, term) for term in group)
            for group in self.all_terms
        )


@dataclass(frozen=True)
class PhraseRule:
    identity: str
    level: str  # strong | medium | context | special
    terms: tuple[str, ...]

    def hits(self, text: str, tokens: set[str]) -> int:
        return sum(1 for term in self.terms if _contains(text, tokens, term))


Rule = Union[OverrideRule, ThresholdRule, PhraseRule]


@dataclass(frozen=True)
class OverrideMatch:
    negated: bool
    name: str | None


def _contains(text: str, tokens: set[str], term: str) -> bool:
    # Palabras sueltas contra tokens, frases contra el texto.
    if " " in term or "'" in term:
        return term in text
    return term in tokens


def normalize(text: str) -> str:
    return " ".join(text.lower().replace("’", "'").split())


@dataclass
class RuleTable:
    anchor_id: str
    overrides: list[OverrideRule] = field(default_factory=list)
    thresholds: list[ThresholdRule] = field(default_factory=list)
    phrases: list[PhraseRule] = field(default_factory=list)
    ignore_names: frozenset[str] = frozenset()
    ignore_suffixes: tuple[str, ...] = ()

    # ── loading ────────────────────────────────────────────────────────

    @classmethod
    def from_dicts(cls, items: list[dict], anchor_id: str,
                   ignore_names: list[str] | None = None,
                   ignore_suffixes: list[str] | None = None) -> RuleTable:
        table = cls(
            anchor_id=anchor_id,
            ignore_names=frozenset(n.lower() for n in ignore_names or []),
            ignore_suffixes=tuple(ignore_suffixes or ()),
        )
        for item in items:
            table.add(_compile(item, anchor_id))
        return table

    @classmethod
    def from_json(cls, path: str | Path, anchor_id: str) -> RuleTable:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, list):
            return cls.from_dicts(data, anchor_id)
        return cls.from_dicts(
            data.get("rules", []),
            anchor_id,
            ignore_names=data.get("ignore_names"),
            ignore_suffixes=data.get("ignore_suffixes"),
        )

    @classmethod
    def default(cls, anchor_id: str = "chris") -> RuleTable:
        return cls.from_dicts(
            DEFAULT_RULES, anchor_id,
            ignore_names=DEFAULT_IGNORE_NAMES,
            ignore_suffixes=["ing"],
        )

    def add(self, rule: Rule) -> None:
        if isinstance(rule, OverrideRule):
            self.overrides.append(rule)
        elif isinstance(rule, ThresholdRule):
            self.thresholds.append(rule)
        elif isinstance(rule, PhraseRule):
            self.phrases.append(rule)
        else:
            raise TypeError(f"unknown rule type: {type(rule).__name__}")

    # ── queries ────────────────────────────────────────────────────────

    def is_name(self, word: str | None) -> bool:
        if not word:
            return False
        word = word.lower()
        if len(word) < 2 or word in self.ignore_names:
            return False
        return not any(word.endswith(s) for s in self.ignore_suffixes)

    def extract_names(self, text: str, kinds: tuple[str, ...] = ("negation", "correction"),
                      exclude: set[str] | None = None) -> list[str]:
        """Every acceptable name claimed in ``text``, in rule order."""
        exclude = exclude or set()
        names: list[str] = []
        for kind in kinds:
            for rule in self.overrides:
                if rule.kind != kind or rule.group is None:
                    continue
                for m in rule.pattern.finditer(text):
                    name = (m.group(rule.group) or "").lower()
                    if self.is_name(name) and name not in exclude and name not in names:
                        names.append(name)
        return names

    def match_override(self, text: str) -> OverrideMatch | None:
        negated = any(
            r.pattern.search(text) for r in self.overrides if r.kind == "negation"
        )
        exclude = {self.anchor_id} if negated else set()
        names = self.extract_names(text, exclude=exclude)
        if names:
            return OverrideMatch(negated=negated, name=names[0])
        if negated:
            return OverrideMatch(negated=True, name=None)
        return None

    def phrases_for(self, identity_id: str) -> list[PhraseRule]:
        return [r for r in self.phrases if r.identity == identity_id]

    def threshold_for(self, identity_id: str, text: str,
                      tokens: set[str]) -> tuple[float | None, bool, list[str]]:
        """(lowest threshold among fired rules, any rule forcing a match, fired names)."""
        fired = [
            r for r in self.thresholds
            if r.identity == identity_id and r.fires(text, tokens)
        ]
        if not fired:
            return None, False, []
        threshold = min(r.threshold for r in fired)
        forced = any(r.forces_match for r in fired)
        return threshold, forced, [r.name for r in fired if r.name]


def _compile(item: dict, anchor_id: str) -> Rule:
    kind = item.get("type")
    target = item.get("identity", "{anchor}").replace("{anchor}", anchor_id)
    if kind == "override":
        source = item["pattern"].replace("{anchor}", re.escape(anchor_id))
        return OverrideRule(
            kind=item["kind"],
            pattern=re.compile(source, re.IGNORECASE),
            group=item.get("group"),
        )
    if kind == "threshold":
        return ThresholdRule(
            identity=target,
            threshold=float(item["threshold"]),
            name=item.get("name", ""),
            any_terms=tuple(t.replace("{anchor}", anchor_id).lower() for t in item.get("any", [])),
            all_terms=tuple(tuple(t.lower() for t in g) for g in item.get("all", [])),
            forces_match=bool(item.get("forces_match", False)),
        )
    if kind == "phrase":
        level = item["level"]
        if level not in PHRASE_WEIGHTS:
            raise ValueError(f"unknown phrase level: {level!r}")
        return PhraseRule(
            identity=target,
            level=level,
            terms=tuple(t.replace("{anchor}", anchor_id).lower() for t in item["terms"]),
        )
    raise ValueError(f"unknown rule type: {kind!r}")


# ── default policy ─────────────────────────────────────────────────────

HIGH_CONFIDENCE_PHRASES = [
    "do you remember who i am",
    "you're supposed to remember",
    "that's how i built you",
    "hey man",
    "this is fucking",
    "let's dive deep",
    "philosophical questions",
]

DEFAULT_RULES: list[dict] = [
    {"type": "override", "kind": "negation", "pattern": r"\bi'?m\s+not\s+{anchor}\b"},
    {"type": "override", "kind": "negation", "pattern": r"\bthis\s+isn'?t\s+{anchor}\b"},
    {"type": "override", "kind": "negation",
     "pattern": r"\byou'?re\s+confusing\s+me\s+with\s+{anchor}\b"},
    {"type": "override", "kind": "negation",
     "pattern": r"\bstop\s+treating\s+me\s+like\s+{anchor}\b"},
    {"type": "override", "kind": "negation",
     "pattern": r"\bare\s+you\s+confusing\s+me\s+with\s+{anchor}\b"},
    {"type": "override", "kind": "negation",
     "pattern": r"\b(?:i'?m|it'?s)\s+([a-z]+),?\s+not\s+{anchor}\b", "group": 1},
    {"type": "override", "kind": "correction",
     "pattern": r"\bmy\s+name\s+is\s+([a-z]+)\b", "group": 1},
    {"type": "override", "kind": "correction",
     "pattern": r"\bthis\s+is\s+([a-z]+)\b", "group": 1},
    {"type": "override", "kind": "correction",
     "pattern": r"\bi'?m\s+([a-z]+)\b", "group": 1},

    {"type": "threshold", "name": "baseline", "threshold": 0.4},
    {"type": "threshold", "name": "dev_context", "threshold": 0.25, "forces_match": True,
     "any": ["testing", "profile", "server", "debug"],
     "all": [["clint", "meta"], ["clint", "build"]]},
    {"type": "threshold", "name": "known_phrase", "threshold": 0.15, "forces_match": True,
     "any": HIGH_CONFIDENCE_PHRASES},

    {"type": "phrase", "level": "strong",
     "terms": ["man", "fucking", "philosophy", "tech", "clint", "remember", "built"]},
    {"type": "phrase", "level": "medium",
     "terms": ["yeah", "work", "complex", "interesting", "getting", "build",
               "system", "supposed"]},
    {"type": "phrase", "level": "context",
     "terms": ["testing", "profile", "meta", "server", "echo", "foreign"]},
    {"type": "phrase", "level": "special",
     "terms": HIGH_CONFIDENCE_PHRASES + [
         "did you forget who you were talking to",
         "did you think i was someone else",
         "it's {anchor}",
         "back to me",
         "switching back to {anchor}",
     ]},
]

DEFAULT_IGNORE_NAMES = [
    "not", "so", "just", "here", "back", "fine", "good", "ok", "okay", "sure",
    "sorry", "glad", "happy", "sad", "tired", "done", "ready", "new", "curious",
    "still", "really", "very", "also", "about", "from", "in", "on", "at", "with",
    "gonna", "the", "an", "it", "that", "what", "how", "why", "me", "you",
    "your", "my", "all", "afraid", "busy", "bored", "confused", "interested",
    "excited", "sick", "home", "out", "off", "up", "down", "over", "late",
    "early", "right", "wrong", "like", "kind", "pretty", "quite", "too",
    "always", "never", "actually", "probably", "hungry", "alone", "weird",
    "great", "well", "cool", "able", "only", "because", "asking", "trying",
]
