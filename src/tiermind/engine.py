"""ProfileEngine: the core class. Tiered identities, resolution and background upkeep."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from tiermind import trust
from tiermind.arena import ForeignArena
from tiermind.cache import CacheLayer
from tiermind.clustering import build_echo, find_agreements, repeat_visits, suggest_name
from tiermind.config import EngineConfig
from tiermind.decay import decay_links
from tiermind.errors import CacheFault, NotFound, PermissionDenied, StorageFault, TiermindError
from tiermind.models import Identity, Pattern, Tier, Trace, TrustLink
from tiermind.resolver import IdentityResolver, Resolution, ResolveState
from tiermind.rules import RuleTable
from tiermind.scheduler import Handle, Scheduler
from tiermind.sessions import SessionContext, SessionTracker
from tiermind.similarity import SimilarityScorer, extract_tone_baseline
from tiermind.storage import READ_ORDER, TieredStore
from tiermind.voice import voice_hash

logger = logging.getLogger(__name__)

# Huella inicial del anchor.
ANCHOR_BASELINE = {
    "yeah": 0.3, "man": 0.2, "fucking": 0.15, "philosophy": 0.1, "tech": 0.1,
    "work": 0.1, "remember": 0.2, "built": 0.15, "supposed": 0.1, "clint": 0.25,
    "meta": 0.2, "server": 0.15, "system": 0.1, "profile": 0.1, "testing": 0.1,
    "complex": 0.1, "interesting": 0.1, "getting": 0.1, "build": 0.1,
}

MEMORY_PROBE_WORDS = ("bike", "dragon", "unicorn", "time traveler", "fly")


def is_memory_probe(pattern: Pattern) -> bool:
    """Notes recording a "do you remember <made-up thing>" test, not a real event."""
    note = pattern.note
    return "Do you remember" in note and any(w in note for w in MEMORY_PROBE_WORDS)


@dataclass
class IdentityPatch:
    """What mutate_identity() applies, as one atomic unit."""

    pattern: Pattern | None = None
    recurrence: int = 0
    tone_text: str | None = None
    tone_baseline: dict[str, float] | None = None
    voice_text: str | None = None


class ProfileEngine:
    """Un motor de identidades. Un archivo SQLite = los tiers durables.

    API:
        engine.resolve(text)            # quién habla
        engine.get_identity(id)         # registro actual (copia)
        engine.mutate_identity(id, p)   # patrón, recurrencia, tono
        engine.add_trust_link(...)      # grafo de confianza
        engine.check_clustering(id)     # foreign -> echo
        engine.run_maintenance()        # evicción, sweep, decay
        engine.traces()                 # consultar trazas de operaciones
    """

    def __init__(self, path: str | Path = "tiermind.db",
                 config: EngineConfig | None = None,
                 rules: RuleTable | None = None,
                 scheduler: Scheduler | None = None,
                 enable_traces: bool = False,
                 anchor_baseline: dict[str, float] | None = None,
                 clock: Callable[[], float] = time.time,
                 _store: TieredStore | None = None) -> None:
        self.config = config or EngineConfig()
        cfg = self.config
        self.rules = rules or RuleTable.default(cfg.anchor_id)
        self._clock = clock
        self._store = _store or TieredStore(
            path, ForeignArena(cfg.foreign_capacity, cfg.foreign_max_age, clock),
        )
        self.cache = CacheLayer(cfg, clock)
        self.scorer = SimilarityScorer(self.rules)
        self.sessions = SessionTracker(cfg.session_timeout, clock)
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or Scheduler(clock)
        self._enable_traces = enable_traces
        self._lock = threading.RLock()
        self._last_decay: float | None = None
        self.resolver = IdentityResolver(
            self._store, self.rules, self._score, cfg,
            on_foreign_change=self._foreign_changed, on_evict=self._invalidate,
            clock=clock,
        )
        self._bootstrap_anchor(anchor_baseline)
        self._tickers: list[Handle] = [
            self.scheduler.every(cfg.cleanup_interval, self._cleanup_cycle, name="cleanup"),
            self.scheduler.every(cfg.maintenance_interval, self.decay_trust, name="trust-decay"),
        ]

    @property
    def anchor_id(self) -> str:
        return self.config.anchor_id

    @property
    def arena(self) -> ForeignArena:
        return self._store.arena

    # ── resolve ────────────────────────────────────────────────────────

    def resolve(self, utterance: str,
                session: SessionContext | dict | None = None,
                device_id: str | None = None) -> str:
        """Quién habla. Nunca lanza: en el peor caso devuelve el anchor."""
        return self.resolve_detailed(utterance, session, device_id).identity_id

    def resolve_detailed(self, utterance: str,
                         session: SessionContext | dict | None = None,
                         device_id: str | None = None) -> Resolution:
        t0 = time.time()
        if session is None and device_id is not None:
            session = self.sessions.context(device_id)
        with self._lock:
            result = self.resolver.resolve(utterance, session)

        if device_id is not None and result.reason != "session lock":
            self.sessions.commit(device_id, result.identity_id,
                                 self._confidence(result), result.reason)

        self._trace("resolve", utterance, result.identity_id, t0,
                    state=result.decided_by.value, reason=result.reason)
        return result

    @staticmethod
    def _confidence(result: Resolution) -> float:
        if result.decided_by is ResolveState.OVERRIDE_CHECK:
            return 1.0
        return result.score or 0.0

    def _score(self, text: str, identity: Identity) -> float:
        """Similarity through the cache. A cache fault just means recomputing."""
        try:
            cached = self.cache.get_similarity(text, identity.id)
        except CacheFault as exc:
            logger.warning("similarity cache bypassed: %s", exc)
            cached = None
        if cached is not None:
            return cached
        score = self.scorer.score(text, identity)
        try:
            self.cache.set_similarity(text, identity.id, score)
        except CacheFault as exc:
            logger.warning("similarity cache bypassed: %s", exc)
        return score

    def _foreign_changed(self, foreign_id: str) -> None:
        self._invalidate(foreign_id)
        self.scheduler.defer(self.check_clustering, foreign_id,
                             delay=self.config.cluster_delay,
                             name=f"clustering:{foreign_id}")

    # ── identities ─────────────────────────────────────────────────────

    def get_identity(self, identity_id: str) -> Identity | None:
        """Cache first, store second. Always a copy."""
        try:
            cached = self.cache.get_profile(identity_id)
        except CacheFault as exc:
            logger.warning("profile cache bypassed: %s", exc)
            cached = None
        if cached is not None:
            return cached

        try:
            identity = self._store.locate(identity_id)
        except StorageFault as exc:
            logger.warning("get_identity(%s) failed: %s", identity_id, exc)
            return None
        if identity is None:
            return None
        try:
            self.cache.set_profile(identity)
        except CacheFault as exc:
            logger.warning("profile cache bypassed: %s", exc)
        return identity

    def mutate_identity(self, identity_id: str, patch: IdentityPatch) -> bool:
        """Aplica un patch de forma atómica. False si la identidad no existe."""
        t0 = time.time()
        with self._lock:
            identity = self._store.locate(identity_id)
            if identity is None:
                return False
            self._apply(identity, patch)
            self._commit(identity)
        if identity.tier is Tier.FOREIGN:
            self._foreign_changed(identity_id)
        self._trace("mutate", identity_id, "ok", t0)
        return True

    def add_pattern(self, identity_id: str, note: str = "New interaction",
                    relation: str = "general", emotional: str = "neutral") -> bool:
        pattern = Pattern(note=note, relation=relation, emotional=emotional,
                          event=self._clock())
        return self.mutate_identity(identity_id, IdentityPatch(pattern=pattern, recurrence=1))

    def clean_patterns(self, identity_id: str,
                       predicate: Callable[[Pattern], bool] = is_memory_probe) -> int:
        """Drop patterns matching ``predicate``. Returns how many went."""
        with self._lock:
            identity = self._store.locate(identity_id)
            if identity is None:
                return 0
            kept = [p for p in identity.patterns if not predicate(p)]
            removed = len(identity.patterns) - len(kept)
            if removed:
                identity.patterns = kept
                self._commit(identity)
                logger.info("removed %d patterns from %s", removed, identity_id)
        return removed

    def update_voice_hash(self, identity_id: str, text: str) -> str | None:
        digest = voice_hash(text)
        if digest is None:
            return None
        if not self.mutate_identity(identity_id, IdentityPatch(voice_text=text)):
            return None
        return digest

    def _apply(self, identity: Identity, patch: IdentityPatch) -> None:
        cfg = self.config
        if patch.pattern is not None:
            identity.add_pattern(patch.pattern, cap=cfg.pattern_cap)
        identity.recurrence_count += patch.recurrence
        if patch.tone_text:
            identity.merge_baseline(extract_tone_baseline(patch.tone_text),
                                    cap=cfg.tone_baseline_cap)
        if patch.tone_baseline:
            identity.merge_baseline(patch.tone_baseline, cap=cfg.tone_baseline_cap)
        if patch.voice_text:
            identity.voice_hash = voice_hash(patch.voice_text) or identity.voice_hash
        identity.touch(self._clock())

    def _commit(self, identity: Identity) -> None:
        """Whole-record write, then drop everything cached about it."""
        for evicted in self._store.write(identity.tier, identity):
            self._invalidate(evicted)
        self._invalidate(identity.id)

    def _invalidate(self, identity_id: str) -> None:
        try:
            self.cache.invalidate_identity(identity_id)
        except CacheFault as exc:
            logger.warning("cache invalidation failed for %s: %s", identity_id, exc)

    # ── trust ──────────────────────────────────────────────────────────

    def add_trust_link(self, from_id: str, to_id: str, relationship: str,
                       strength: float = 0.5) -> bool:
        cfg = self.config
        with self._lock:
            identity = self._store.locate(from_id)
            if identity is None:
                return False
            trust.add_link(identity, to_id, relationship, strength,
                           bump=cfg.trust_bump, cap=cfg.trust_link_cap, now=self._clock())
            self._commit(identity)
        return True

    def update_trust_strength(self, from_id: str, to_id: str, relationship: str,
                              delta: float) -> bool:
        with self._lock:
            identity = self._store.locate(from_id)
            if identity is None:
                return False
            link = trust.update_strength(identity, to_id, relationship, delta,
                                         cap=self.config.trust_link_cap, now=self._clock())
            if link is None:
                return False
            self._commit(identity)
        return True

    def get_trusted_identities(self, identity_id: str,
                               relationship: str | None = None) -> list[TrustLink]:
        try:
            cached = self.cache.get_trust(identity_id, relationship)
        except CacheFault as exc:
            logger.warning("trust cache bypassed: %s", exc)
            cached = None
        if cached is None:
            identity = self.get_identity(identity_id)
            if identity is None:
                return []
            cached = trust.trusted(identity, relationship)
            try:
                self.cache.set_trust(identity_id, relationship, cached)
            except CacheFault as exc:
                logger.warning("trust cache bypassed: %s", exc)
        return [dataclasses.replace(link) for link in cached]

    # ── cache ──────────────────────────────────────────────────────────

    def get_cache_metrics(self) -> dict:
        return self.cache.metrics()

    def clear_cache(self, namespace: str | None = None) -> None:
        self.cache.clear(namespace)

    # ── admin ──────────────────────────────────────────────────────────

    def list_all(self, tier: Tier | str | None = None) -> list[Identity]:
        if tier is not None:
            return self._store.load_tier(Tier(tier))
        return [i for t in READ_ORDER for i in self._store.load_tier(t)]

    def seed_stub(self, identity_id: str, note: str | None = None,
                  tone_text: str | None = None) -> Identity:
        """Registra un alias curado a mano. Solo se reconoce por mención literal.

        Un foreign vivo con el mismo id se absorbe en el stub: un id, una identidad.
        """
        identity_id = identity_id.lower()
        if identity_id == self.anchor_id:
            raise PermissionDenied(f"{identity_id!r} is the anchor")
        cfg = self.config
        with self._lock:
            if self._store.exists(identity_id, durable_only=True):
                raise TiermindError(f"identity {identity_id!r} already exists")
            now = self._clock()
            stub = Identity(id=identity_id, tier=Tier.STUB, first_seen=now, last_seen=now)
            live = self.arena.get(identity_id)
            if live is not None:
                stub.first_seen = live.first_seen
                stub.recurrence_count = live.recurrence_count
                stub.patterns = list(live.patterns)
                stub.merge_baseline(live.tone_baseline, cap=cfg.tone_baseline_cap)
            if note:
                stub.add_pattern(Pattern(note=note, relation="preloaded", event=now),
                                 cap=cfg.pattern_cap)
            if tone_text:
                stub.merge_baseline(extract_tone_baseline(tone_text),
                                    cap=cfg.tone_baseline_cap)
            self._commit(stub)
            if live is not None:
                self.arena.remove(identity_id)
                logger.info("foreign %s absorbed into its stub", identity_id)
        logger.info("seeded stub %s", identity_id)
        return stub.copy()

    def delete_identity(self, identity_id: str) -> None:
        t0 = time.time()
        if identity_id == self.anchor_id:
            raise PermissionDenied(f"anchor identity {identity_id!r} cannot be deleted")
        with self._lock:
            identity = self._store.locate(identity_id)
            if identity is None:
                raise NotFound(identity_id)
            self._store.delete(identity.tier, identity_id)
            self._invalidate(identity_id)
        logger.info("deleted %s identity %s", identity.tier.value, identity_id)
        self._trace("delete", identity_id, identity.tier.value, t0)

    def merge_identities(self, source_id: str, target_id: str,
                         ratio: float = 0.5) -> Identity:
        """Fold ``source`` into ``target``.

        Baselines blend as target * ratio + source * (1 - ratio); target
        recurrence grows by floor(source recurrence * ratio). Echo and foreign
        sources are deleted afterwards, stubs stay.
        """
        t0 = time.time()
        if source_id == self.anchor_id:
            raise PermissionDenied(f"anchor identity {source_id!r} cannot be merged away")
        if source_id == target_id:
            raise ValueError("cannot merge an identity into itself")
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"ratio must be within [0, 1], got {ratio}")

        cfg = self.config
        with self._lock:
            source = self._store.locate(source_id)
            if source is None:
                raise NotFound(source_id)
            target = self._store.locate(target_id)
            if target is None:
                raise NotFound(target_id)

            patterns = sorted(target.patterns + source.patterns, key=lambda p: p.event)
            target.patterns = patterns[-cfg.pattern_cap:]

            blended = dict(target.tone_baseline)
            for token, weight in source.tone_baseline.items():
                blended[token] = round(blended.get(token, 0.0) * ratio + weight * (1 - ratio), 6)
            target.tone_baseline = {}
            target.merge_baseline(blended, cap=cfg.tone_baseline_cap)

            for link in source.trust_links:
                if link.target_id == target.id:
                    continue
                existing = trust.find_link(target, link.target_id, link.relationship)
                if existing is None:
                    target.trust_links.append(link)
                elif link.strength > existing.strength:
                    existing.strength = link.strength
            trust.prune(target, cfg.trust_link_cap)

            target.recurrence_count += int(source.recurrence_count * ratio)
            target.touch(self._clock())
            self._commit(target)

            if source.tier in (Tier.ECHO, Tier.FOREIGN):
                self._store.delete(source.tier, source_id)
            self._invalidate(source_id)

        logger.info("merged %s into %s (ratio %.2f)", source_id, target_id, ratio)
        self._trace("merge", source_id, target_id, t0, ratio=ratio)
        return target.copy()

    def find_similar(self, identity_id: str,
                     threshold: float = 0.7) -> list[tuple[str, float]]:
        """Other identities whose fingerprint scores this one's latest note >= threshold."""
        target = self.get_identity(identity_id)
        if target is None or not target.latest_note:
            return []
        others = [i for i in self.list_all() if i.id != identity_id]
        matches = find_agreements(target.latest_note, others, self._score, threshold)
        return [(identity.id, score) for identity, score in matches]

    # ── analytics ──────────────────────────────────────────────────────

    def identity_analytics(self, identity_id: str) -> dict | None:
        try:
            cached = self.cache.get_context(identity_id, "analytics")
        except CacheFault as exc:
            logger.warning("context cache bypassed: %s", exc)
            cached = None
        if cached is not None:
            return cached
        identity = self.get_identity(identity_id)
        if identity is None:
            return None
        links = identity.trust_links
        stats = {
            "identity_id": identity.id,
            "tier": identity.tier.value,
            "total_interactions": identity.recurrence_count,
            "patterns_count": len(identity.patterns),
            "trust_links_count": len(links),
            "avg_trust_strength": sum(l.strength for l in links) / len(links) if links else 0.0,
            "tone_baseline_size": len(identity.tone_baseline),
            "first_seen": identity.first_seen,
            "last_seen": identity.last_seen,
            "voice_hash": identity.voice_hash,
            "is_anchor": identity.id == self.anchor_id,
        }
        try:
            self.cache.set_context(identity_id, "analytics", stats)
        except CacheFault as exc:
            logger.warning("context cache bypassed: %s", exc)
        return dict(stats)

    def system_analytics(self) -> dict:
        identities = self.list_all()
        by_tier = {tier.value: 0 for tier in Tier}
        for identity in identities:
            by_tier[identity.tier.value] += 1
        total_interactions = sum(i.recurrence_count for i in identities)
        most_active = sorted(identities, key=lambda i: (-i.recurrence_count, i.id))[:5]
        return {
            "total_identities": len(identities),
            "tiers": by_tier,
            "total_interactions": total_interactions,
            "avg_interactions": total_interactions / max(len(identities), 1),
            "most_active": [
                {"identity_id": i.id, "interactions": i.recurrence_count, "last_seen": i.last_seen}
                for i in most_active
            ],
            "trust_network_size": sum(len(i.trust_links) for i in identities),
            "foreign_evicted": self.arena.evicted,
            "active_sessions": len(self.sessions.active()),
            "cache_hit_rate": self.cache.metrics()["hit_rate"],
        }

    # ── clustering / promotion ─────────────────────────────────────────

    def check_clustering(self, foreign_id: str) -> str | None:
        """Promote a foreign entry once enough peers or earlier visits agree with it.

        Returns the new echo id, or None. A vanished entry is a no-op.
        """
        t0 = time.time()
        cfg = self.config
        with self._lock:
            entry = self.arena.get(foreign_id)
            if entry is None:
                logger.debug("clustering skipped: %s is gone", foreign_id)
                return None

            peers = [p for p in self.arena.snapshot() if p.id != foreign_id]
            agreeing = find_agreements(entry.latest_note, peers, self._score,
                                       cfg.cluster_threshold)
            # uncached: the throwaway fingerprint shares the entry's id
            repeats = repeat_visits(entry, self.scorer.score, cfg.cluster_threshold)
            if len(agreeing) + len(repeats) < cfg.cluster_quorum:
                return None

            absorbed = [peer for peer, _ in agreeing]
            name = suggest_name([entry] + absorbed, self.rules)
            if name is not None and (name == self.anchor_id
                                     or self._store.exists(name, durable_only=True)):
                logger.info("echo name %r already taken; using a generated id", name)
                name = None

            echo = build_echo(entry, name, absorbed,
                              pattern_cap=cfg.pattern_cap,
                              baseline_cap=cfg.tone_baseline_cap)
            self._store.write(Tier.ECHO, echo)
            for member in [entry] + absorbed:
                self.arena.remove(member.id)
                self._invalidate(member.id)
            self._invalidate(echo.id)

        members = ", ".join(m.id for m in [entry] + absorbed)
        logger.info("promoted %s to echo %s (%d peers, %d repeat visits)",
                    members, echo.id, len(absorbed), len(repeats))
        self._trace("promote", members, echo.id, t0)
        return echo.id

    # ── maintenance ────────────────────────────────────────────────────

    def decay_trust(self) -> int:
        """Decay every durable trust link. Returns how many links died."""
        cfg = self.config
        now = self._clock()
        died = 0
        with self._lock:
            for tier in (Tier.ANCHOR, Tier.ECHO, Tier.STUB):
                for identity in self._store.load_tier(tier):
                    if not identity.trust_links:
                        continue
                    _, dead = decay_links(identity, now, cfg.trust_half_life,
                                          cfg.trust_death_threshold, since=self._last_decay)
                    died += len(dead)
                    self._commit(identity)
            self._last_decay = now
        if died:
            logger.info("trust decay dropped %d links", died)
        return died

    def _cleanup_cycle(self) -> dict:
        evicted = self.arena.evict()
        for foreign_id in evicted:
            self._invalidate(foreign_id)
        return {
            "evicted": len(evicted),
            "expired_cache": self.cache.sweep(),
            "sessions": self.sessions.cleanup(),
        }

    def run_maintenance(self) -> dict:
        """One full cleanup + decay pass, synchronously."""
        t0 = time.time()
        report = self._cleanup_cycle()
        report["dead_links"] = self.decay_trust()
        self._trace("maintenance", "", str(report), t0, **report)
        return report

    # ── traces (observability) ─────────────────────────────────────────

    def _trace(self, operation: str, input_text: str, output_text: str,
               t0: float, **metadata) -> None:
        """Registra un trace si enable_traces=True."""
        if not self._enable_traces:
            return
        trace = Trace(
            operation=operation,
            input_text=str(input_text)[:500],
            output_text=str(output_text)[:500],
            duration_ms=(time.time() - t0) * 1000,
            metadata=metadata,
        )
        try:
            self._store.save_trace(trace)
        except StorageFault as exc:
            logger.warning("trace for %s dropped: %s", operation, exc)

    def traces(self, operation: str | None = None, limit: int = 100) -> list[Trace]:
        """Consulta trazas de operaciones."""
        return self._store.load_traces(operation=operation, limit=limit)

    # ── lifecycle ──────────────────────────────────────────────────────

    def _bootstrap_anchor(self, baseline: dict[str, float] | None) -> None:
        if self._store.read(Tier.ANCHOR, self.anchor_id) is not None:
            return
        now = self._clock()
        anchor = Identity(
            id=self.anchor_id,
            tier=Tier.ANCHOR,
            first_seen=now,
            last_seen=now,
            recurrence_count=999,
            tone_baseline=dict(ANCHOR_BASELINE if baseline is None else baseline),
            patterns=[Pattern(note="Primary user initialization - anchor created",
                              relation="creator", emotional="steady", event=now)],
            trust_links=[
                TrustLink(self.anchor_id, "primary_user", 1.0, now, now),
                TrustLink(self.anchor_id, "creator", 1.0, now, now),
            ],
        )
        self._store.write(Tier.ANCHOR, anchor)
        logger.info("anchor identity %s created", self.anchor_id)

    def start(self) -> None:
        """Run background work on the scheduler's worker thread."""
        self.scheduler.start()

    @property
    def count(self) -> int:
        """Cuántas identidades hay, foreign incluidas."""
        return self._store.count()

    def close(self) -> None:
        for handle in self._tickers:
            handle.cancel()
        if self._owns_scheduler:
            self.scheduler.cancel_all()
            self.scheduler.stop()
        self._store.close()

    def __enter__(self) -> ProfileEngine:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ProfileEngine(anchor={self.anchor_id!r}, identities={self.count})"
