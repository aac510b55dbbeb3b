"""Tests for tiermind core."""

import logging

import pytest

from tiermind import (
    CacheFault, EngineConfig, Identity, IdentityPatch, NotFound, Pattern, PermissionDenied,
    ProfileEngine, Tier, TiermindError,
)
from tiermind.similarity import extract_tone_baseline

DAY = 24 * 3600


@pytest.fixture
def engine(db_path, clock):
    """Engine temporal que se limpia al terminar."""
    e = ProfileEngine(db_path, clock=clock)
    yield e
    e.close()


def put_foreign(engine, id, note, clock):
    engine.arena.put(Identity(
        id=id, tier=Tier.FOREIGN, first_seen=clock.now, last_seen=clock.now,
        recurrence_count=1, tone_baseline=extract_tone_baseline(note),
        patterns=[Pattern(note=note, event=clock.now)],
    ))


def put_echo(engine, id, note):
    engine._store.write(Tier.ECHO, Identity(
        id=id, tier=Tier.ECHO, recurrence_count=4,
        tone_baseline=extract_tone_baseline(note),
        patterns=[Pattern(note=note)],
    ))


# ── Bootstrap ──────────────────────────────────────────────────────────


class TestAnchor:
    def test_bootstrapped(self, engine):
        anchor = engine.get_identity("chris")
        assert anchor.tier is Tier.ANCHOR
        assert anchor.recurrence_count == 999
        assert {l.relationship for l in anchor.trust_links} == {"primary_user", "creator"}
        assert anchor.tone_baseline["clint"] == 0.25

    def test_cannot_delete(self, engine):
        with pytest.raises(PermissionDenied):
            engine.delete_identity("chris")
        with pytest.raises(PermissionDenied):
            engine._store.delete(Tier.ANCHOR, "chris")
        assert engine.get_identity("chris") is not None

    def test_survives_reopen(self, db_path, clock):
        with ProfileEngine(db_path, clock=clock) as first:
            born = first.get_identity("chris").first_seen
        clock.advance(DAY)
        with ProfileEngine(db_path, clock=clock) as second:
            assert second.get_identity("chris").first_seen == born

    def test_custom_anchor(self, db_path, clock):
        cfg = EngineConfig(anchor_id="alex")
        with ProfileEngine(db_path, config=cfg, anchor_baseline={"synth": 0.3},
                           clock=clock) as e:
            assert e.get_identity("alex").tone_baseline == {"synth": 0.3}
            assert e.resolve("I'm not Alex, I'm Dana") == "dana"


# ── Resolve ────────────────────────────────────────────────────────────


class TestResolve:
    def test_explicit_correction(self, engine):
        assert engine.resolve("I'm not Chris, I'm Dana") == "dana"
        dana = engine.get_identity("dana")
        assert dana.tier is Tier.FOREIGN

    def test_anchor(self, engine):
        assert engine.resolve("yeah man, remember when we built clint?") == "chris"

    def test_never_raises(self, engine):
        engine._store.close()
        assert engine.resolve("what a lovely afternoon") == "chris"

    def test_new_foreign_schedules_clustering(self, engine):
        before = engine.scheduler.pending
        engine.resolve("what a lovely afternoon")
        assert engine.scheduler.pending == before + 1

    def test_device_session_locks(self, engine):
        assert engine.resolve("I'm Dana", device_id="kitchen") == "dana"
        assert engine.sessions.context("kitchen").locked
        assert engine.resolve("what a lovely afternoon", device_id="kitchen") == "dana"
        assert engine.resolve("what a lovely afternoon", device_id="garage") != "dana"

    def test_similarity_cache_reused(self, engine):
        engine.resolve("what a lovely afternoon")
        engine.resolve("what a lovely afternoon")
        assert engine.get_cache_metrics()["namespaces"]["similarities"]["hits"] >= 1

    def test_detailed(self, engine):
        result = engine.resolve_detailed("this is Kim")
        assert result.identity_id == "kim"
        assert result.created


# ── Identities ─────────────────────────────────────────────────────────


class TestIdentities:
    def test_get_is_idempotent(self, engine):
        assert engine.get_identity("chris") == engine.get_identity("chris")

    def test_get_missing(self, engine):
        assert engine.get_identity("ghost") is None

    def test_mutation_visible_through_cache(self, engine):
        engine.get_identity("chris")
        patch = IdentityPatch(pattern=Pattern(note="likes sailing"), recurrence=1)
        assert engine.mutate_identity("chris", patch)
        anchor = engine.get_identity("chris")
        assert anchor.latest_note == "likes sailing"
        assert anchor.recurrence_count == 1000

    def test_mutation_drops_similarities(self, engine):
        engine.resolve("what a lovely afternoon")
        assert engine.cache.get_similarity("what a lovely afternoon", "chris") is not None
        engine.mutate_identity("chris", IdentityPatch(tone_text="lovely afternoon"))
        assert engine.cache.get_similarity("what a lovely afternoon", "chris") is None

    def test_get_survives_storage_fault(self, engine, caplog):
        engine.get_identity("chris")
        engine._store.close()
        with caplog.at_level(logging.WARNING, logger="tiermind.engine"):
            assert engine.get_identity("ghost") is None
        assert "failed" in caplog.text
        assert engine.get_identity("chris").tier is Tier.ANCHOR

    def test_mutate_unknown(self, engine):
        assert not engine.mutate_identity("ghost", IdentityPatch(recurrence=1))

    def test_mutate_tone_and_voice(self, engine, clock):
        clock.advance(60)
        engine.mutate_identity("chris", IdentityPatch(tone_text="sailing sailing",
                                                      voice_text="Ahoy there!"))
        anchor = engine.get_identity("chris")
        assert anchor.tone_baseline["sailing"] == pytest.approx(0.2)
        assert anchor.voice_hash is not None
        assert anchor.last_seen == clock.now

    def test_mutate_foreign_schedules_clustering(self, engine, clock):
        put_foreign(engine, "foreign-a", "sailing boats", clock)
        before = engine.scheduler.pending
        engine.mutate_identity("foreign-a", IdentityPatch(recurrence=1))
        assert engine.scheduler.pending == before + 1
        assert engine.get_identity("foreign-a").recurrence_count == 2

    def test_returns_copies(self, engine):
        engine.get_identity("chris").patterns.clear()
        assert engine.get_identity("chris").patterns

    def test_add_pattern_cap(self, engine):
        for i in range(12):
            engine.add_pattern("chris", f"note {i}")
        anchor = engine.get_identity("chris")
        assert len(anchor.patterns) == 10
        assert anchor.latest_note == "note 11"
        assert anchor.recurrence_count == 999 + 12

    def test_clean_patterns(self, engine):
        engine.add_pattern("chris", "Do you remember the dragon we saw?")
        engine.add_pattern("chris", "talked about servers")
        assert engine.clean_patterns("chris") == 1
        notes = [p.note for p in engine.get_identity("chris").patterns]
        assert "talked about servers" in notes
        assert not any("dragon" in n for n in notes)
        assert engine.clean_patterns("ghost") == 0

    def test_voice_hash(self, engine):
        digest = engine.update_voice_hash("chris", "Yeah man, that's wild.")
        assert digest == engine.get_identity("chris").voice_hash
        assert engine.update_voice_hash("chris", "") is None
        assert engine.update_voice_hash("ghost", "hello") is None


# ── Trust ──────────────────────────────────────────────────────────────


class TestTrust:
    def test_same_edge_twice(self, engine):
        engine.seed_stub("bob")
        engine.add_trust_link("bob", "sam", "friend")
        engine.add_trust_link("bob", "sam", "friend")
        links = engine.get_trusted_identities("bob")
        assert len(links) == 1
        assert links[0].strength == pytest.approx(0.6)

    def test_cap(self, engine):
        engine.seed_stub("bob")
        for i in range(11):
            engine.add_trust_link("bob", f"t{i}", "friend", strength=0.05 * (i + 1))
        links = engine.get_trusted_identities("bob")
        assert len(links) == 10
        assert "t0" not in {l.target_id for l in links}

    def test_cache_invalidated_on_change(self, engine):
        engine.seed_stub("bob")
        engine.add_trust_link("bob", "sam", "friend", 0.4)
        assert len(engine.get_trusted_identities("bob", "friend")) == 1
        engine.add_trust_link("bob", "kim", "friend", 0.9)
        assert [l.target_id for l in engine.get_trusted_identities("bob", "friend")] == [
            "kim", "sam",
        ]

    def test_update_strength(self, engine):
        engine.seed_stub("bob")
        engine.add_trust_link("bob", "sam", "friend", 0.5)
        assert engine.update_trust_strength("bob", "sam", "friend", 0.2)
        assert engine.get_trusted_identities("bob")[0].strength == pytest.approx(0.7)
        assert not engine.update_trust_strength("bob", "kim", "friend", 0.2)
        assert not engine.update_trust_strength("ghost", "sam", "friend", 0.2)

    def test_unknown_identity(self, engine):
        assert not engine.add_trust_link("ghost", "sam", "friend")
        assert engine.get_trusted_identities("ghost") == []

    def test_returned_links_are_copies(self, engine):
        engine.seed_stub("bob")
        engine.add_trust_link("bob", "sam", "friend", 0.5)
        engine.get_trusted_identities("bob")[0].strength = 0.0
        assert engine.get_trusted_identities("bob")[0].strength == 0.5


# ── Clustering ─────────────────────────────────────────────────────────


class TestClustering:
    def test_quorum_promotes(self, engine, clock):
        put_foreign(engine, "foreign-a", "I'm Sam and I love sailing boats", clock)
        put_foreign(engine, "foreign-b", "I'm Sam, I love sailing boats a lot", clock)
        put_foreign(engine, "foreign-c", "Hi, I'm Sam and I love sailing boats", clock)
        assert engine.check_clustering("foreign-c") == "sam"
        sam = engine.get_identity("sam")
        assert sam.tier is Tier.ECHO
        assert sam.recurrence_count == 3
        assert len(engine.arena) == 0
        assert [i.id for i in engine.list_all(Tier.ECHO)] == ["sam"]

    def test_claim_joins_seeded_peers(self, engine, clock):
        put_foreign(engine, "foreign-a", "I'm Sam and I love sailing boats", clock)
        put_foreign(engine, "foreign-b", "I'm Sam, I love sailing boats a lot", clock)
        assert engine.resolve("Hi, I'm Sam and I love sailing boats") == "sam"
        engine.scheduler.run_all()
        assert engine.get_identity("sam").tier is Tier.ECHO
        assert len(engine.arena) == 0

    def test_three_claims_promote_through_resolve(self, engine):
        for text in ("I'm Sam and I love sailing boats",
                     "I'm Sam, I love sailing boats a lot",
                     "Hi, I'm Sam and I love sailing boats"):
            assert engine.resolve(text) == "sam"
        engine.scheduler.run_all()
        sam = engine.get_identity("sam")
        assert sam.tier is Tier.ECHO
        assert sam.recurrence_count == 3
        assert len(sam.patterns) == 3
        assert len(engine.arena) == 0

    def test_two_claims_stay_foreign(self, engine):
        engine.resolve("I'm Sam and I love sailing boats")
        engine.resolve("I'm Sam, I love sailing boats a lot")
        engine.scheduler.run_all()
        assert engine.get_identity("sam").tier is Tier.FOREIGN
        engine.resolve("Hi, I'm Sam and I love sailing boats")
        engine.scheduler.run_all()
        assert engine.get_identity("sam").tier is Tier.ECHO

    def test_dissimilar_claims_stay_foreign(self, engine):
        engine.resolve("I'm Sam and I love sailing boats")
        engine.resolve("I'm Sam, quantum chromodynamics lecture tonight")
        engine.resolve("I'm Sam, gardening tomatoes in spring")
        engine.scheduler.run_all()
        assert engine.get_identity("sam").tier is Tier.FOREIGN

    def test_idempotent(self, engine, clock):
        for id in ("foreign-a", "foreign-b", "foreign-c"):
            put_foreign(engine, id, "sailing boats on the lake", clock)
        echo_id = engine.check_clustering("foreign-c")
        assert echo_id.startswith("echo-")
        assert engine.check_clustering("foreign-c") is None
        assert len(engine.list_all(Tier.ECHO)) == 1

    def test_below_quorum(self, engine, clock):
        put_foreign(engine, "foreign-a", "sailing boats on the lake", clock)
        put_foreign(engine, "foreign-b", "sailing boats on the lake", clock)
        put_foreign(engine, "foreign-c", "gardening tomatoes in spring", clock)
        assert engine.check_clustering("foreign-b") is None
        assert len(engine.arena) == 3

    def test_taken_name_gets_generated_id(self, engine, clock):
        engine.seed_stub("sam")
        for id in ("foreign-a", "foreign-b", "foreign-c"):
            put_foreign(engine, id, "I'm Sam and I love sailing boats", clock)
        echo_id = engine.check_clustering("foreign-a")
        assert echo_id.startswith("echo-")
        assert engine.get_identity("sam").tier is Tier.STUB

    def test_missing_entry_is_noop(self, engine):
        assert engine.check_clustering("foreign-ghost") is None


# ── Admin ──────────────────────────────────────────────────────────────


class TestAdmin:
    def test_seed_stub(self, engine):
        stub = engine.seed_stub("Bob", note="the neighbour", tone_text="garden fence")
        assert stub.id == "bob"
        assert engine.get_identity("bob").tier is Tier.STUB
        with pytest.raises(TiermindError):
            engine.seed_stub("bob")
        with pytest.raises(PermissionDenied):
            engine.seed_stub("chris")

    def test_seed_stub_absorbs_live_foreign(self, engine):
        engine.resolve("I'm not Chris, I'm Dana")
        engine.get_identity("dana")
        engine.seed_stub("Dana", note="the neighbour")
        assert "dana" not in engine.arena
        dana = engine.get_identity("dana")
        assert dana.tier is Tier.STUB
        assert dana.recurrence_count == 1
        assert [p.note for p in dana.patterns] == ["I'm not Chris, I'm Dana", "the neighbour"]
        assert engine.resolve("I'm Dana") == "dana"
        assert engine.list_all(Tier.FOREIGN) == []

    def test_delete(self, engine):
        put_echo(engine, "sam", "sailing")
        engine.get_identity("sam")
        engine.delete_identity("sam")
        assert engine.get_identity("sam") is None
        with pytest.raises(NotFound):
            engine.delete_identity("sam")

    def test_merge(self, engine):
        engine.seed_stub("bob", tone_text="sail sail")
        engine._store.write(Tier.ECHO, Identity(
            id="sam", tier=Tier.ECHO, recurrence_count=4,
            tone_baseline={"sail": 0.4, "lake": 0.1},
            patterns=[Pattern(note="by the lake")],
        ))
        merged = engine.merge_identities("sam", "bob", ratio=0.5)
        assert merged.tone_baseline["sail"] == pytest.approx(0.3)
        assert merged.tone_baseline["lake"] == pytest.approx(0.05)
        assert merged.recurrence_count == 2
        assert merged.latest_note == "by the lake"
        assert engine.get_identity("sam") is None

    def test_merge_keeps_stub_source(self, engine):
        engine.seed_stub("bob")
        put_echo(engine, "sam", "sailing")
        engine.merge_identities("bob", "sam")
        assert engine.get_identity("bob") is not None

    def test_merge_errors(self, engine):
        put_echo(engine, "sam", "sailing")
        with pytest.raises(PermissionDenied):
            engine.merge_identities("chris", "sam")
        with pytest.raises(ValueError):
            engine.merge_identities("sam", "sam")
        with pytest.raises(ValueError):
            engine.merge_identities("sam", "chris", ratio=2.0)
        with pytest.raises(NotFound):
            engine.merge_identities("ghost", "sam")
        with pytest.raises(NotFound):
            engine.merge_identities("sam", "ghost")

    def test_list_all(self, engine, clock):
        put_echo(engine, "sam", "sailing")
        put_foreign(engine, "foreign-a", "hello", clock)
        assert [i.id for i in engine.list_all()] == ["chris", "sam", "foreign-a"]
        assert [i.id for i in engine.list_all("echo")] == ["sam"]

    def test_find_similar(self, engine):
        put_echo(engine, "sam", "sailing boats on the lake")
        put_echo(engine, "kim", "sailing boats on the lake")
        put_echo(engine, "amy", "gardening tomatoes")
        assert engine.find_similar("sam", threshold=0.6) == [("kim", 1.0)]
        assert engine.find_similar("ghost") == []

    def test_identity_analytics(self, engine):
        stats = engine.identity_analytics("chris")
        assert stats["is_anchor"]
        assert stats["trust_links_count"] == 2
        assert stats["avg_trust_strength"] == 1.0
        assert engine.identity_analytics("ghost") is None

    def test_identity_analytics_cached_until_mutation(self, engine):
        engine.identity_analytics("chris")
        engine.identity_analytics("chris")["total_interactions"] = -1
        assert engine.get_cache_metrics()["namespaces"]["contexts"]["hits"] == 1
        assert engine.identity_analytics("chris")["total_interactions"] == 999
        engine.add_pattern("chris", "went sailing")
        assert engine.identity_analytics("chris")["total_interactions"] == 1000

    def test_system_analytics(self, engine, clock):
        put_echo(engine, "sam", "sailing")
        engine.seed_stub("bob")
        put_foreign(engine, "foreign-a", "hello", clock)
        stats = engine.system_analytics()
        assert stats["total_identities"] == 4
        assert stats["tiers"] == {"anchor": 1, "stub": 1, "echo": 1, "foreign": 1}
        assert stats["most_active"][0]["identity_id"] == "chris"
        assert stats["trust_network_size"] == 2


# ── Maintenance ────────────────────────────────────────────────────────


class TestMaintenance:
    def test_eviction_bound(self, db_path, clock):
        with ProfileEngine(db_path, config=EngineConfig(foreign_capacity=5),
                           clock=clock) as e:
            for i in range(8):
                e.resolve(f"zebra{i} quartz{i} vortex{i}")
            assert len(e.arena) <= 5
            e.run_maintenance()
            assert len(e.arena) <= 5

    def test_aged_foreigners_evicted(self, engine, clock):
        engine.resolve("what a lovely afternoon")
        clock.advance(1801)
        report = engine.run_maintenance()
        assert report["evicted"] == 1
        assert len(engine.arena) == 0

    def test_cleanup_ticker(self, engine, clock):
        engine.resolve("what a lovely afternoon")
        clock.advance(1801)
        engine.scheduler.run_pending()
        assert len(engine.arena) == 0

    def test_trust_decay(self, engine, clock):
        clock.advance(30 * DAY)
        assert engine.run_maintenance()["dead_links"] == 0
        links = engine.get_trusted_identities("chris")
        assert [l.strength for l in links] == [pytest.approx(0.5)] * 2
        clock.advance(30 * DAY)
        engine.decay_trust()
        assert engine.get_trusted_identities("chris")[0].strength == pytest.approx(0.25)

    def test_dead_links_dropped(self, engine, clock):
        clock.advance(300 * DAY)
        assert engine.decay_trust() == 2
        assert engine.get_trusted_identities("chris") == []


class TestCacheConsistency:
    def test_aged_out_foreign_leaves_cache(self, db_path, clock):
        with ProfileEngine(db_path, config=EngineConfig(foreign_max_age=10),
                           clock=clock) as e:
            fid = e.resolve("gardening tomatoes spring")
            assert e.get_identity(fid) is not None
            clock.advance(20)
            e.resolve("quantum chromodynamics lecture")
            assert fid not in e.arena
            assert e.get_identity(fid) is None
            assert not e.mutate_identity(fid, IdentityPatch(recurrence=1))

    def test_capacity_eviction_leaves_cache(self, db_path, clock):
        with ProfileEngine(db_path, config=EngineConfig(foreign_capacity=1),
                           clock=clock) as e:
            first = e.resolve("gardening tomatoes spring")
            e.get_identity(first)
            clock.advance(1)
            second = e.resolve("quantum chromodynamics lecture")
            assert first not in e.arena
            assert e.get_identity(first) is None
            assert e.get_identity(second) is not None


class TestCacheFaults:
    @pytest.fixture
    def broken_cache(self, engine, monkeypatch):
        def unavailable(name):
            raise CacheFault(f"{name} unavailable")

        monkeypatch.setattr(engine.cache, "namespace", unavailable)
        return engine

    def test_resolve_falls_through_to_store(self, broken_cache):
        assert broken_cache.resolve("I'm not Chris, I'm Dana") == "dana"
        assert broken_cache.resolve("yeah man, remember when we built clint?") == "chris"
        assert broken_cache.resolve("what a lovely afternoon").startswith("foreign-")

    def test_reads_and_mutations_still_work(self, broken_cache):
        assert broken_cache.get_identity("chris").tier is Tier.ANCHOR
        assert broken_cache.mutate_identity("chris", IdentityPatch(recurrence=1))
        assert broken_cache.get_identity("chris").recurrence_count == 1000
        assert len(broken_cache.get_trusted_identities("chris")) == 2
        assert broken_cache.identity_analytics("chris")["total_interactions"] == 1000


class TestLifecycle:
    def test_context_manager(self, db_path, clock):
        with ProfileEngine(db_path, clock=clock) as e:
            assert e.count == 1
            assert "chris" in repr(e)

    def test_clear_cache(self, engine):
        engine.get_identity("chris")
        engine.clear_cache()
        assert engine.get_cache_metrics()["size"] == 0
