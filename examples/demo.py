#!/usr/bin/env python3
"""
tiermind demo: who is speaking, and how strangers become echoes.

No network. No API keys. Just run it.
"""

import os
import tempfile

from tiermind import ProfileEngine


def header(text):
    print(f"\n{'='*64}")
    print(f"  {text}")
    print(f"{'='*64}\n")


def show(engine, label=""):
    identities = engine.list_all()
    if label:
        print(f"  [{label}] {len(identities)} identities:")
    for ident in identities:
        print(f"    {ident.tier.value:<8} {ident.id:<24} "
              f"seen {ident.recurrence_count:>3}x | {ident.latest_note[:40]}")
    print()


def resolve(engine, text, **kw):
    result = engine.resolve_detailed(text, **kw)
    print(f"  {text!r:<48} → {result.identity_id} ({result.decided_by.value})")


def main():
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    engine = ProfileEngine(db_path)

    header("TIERMIND: Identity Resolution Demo")
    show(engine, "Fresh bootstrap")

    # ── Resolution ─────────────────────────────────────────────────────

    header("RESOLVE: anchor, overrides, strangers")

    resolve(engine, "yeah man, remember when we built clint?")
    resolve(engine, "I'm not Chris, I'm Dana")
    resolve(engine, "What a lovely afternoon for gardening")
    resolve(engine, "What a lovely afternoon for gardening again")
    resolve(engine, "I'm Dana", device_id="kitchen")
    resolve(engine, "tell me a story", device_id="kitchen")

    show(engine, "After resolution")

    # ── Promotion ──────────────────────────────────────────────────────

    header("PROMOTE: three agreeing visits become one echo")

    resolve(engine, "I'm Sam and I love sailing boats")
    resolve(engine, "I'm Sam, I love sailing boats a lot")
    resolve(engine, "Hi, I'm Sam and I love sailing boats")
    engine.scheduler.run_all()

    show(engine, "After clustering")

    # ── Trust ──────────────────────────────────────────────────────────

    header("TRUST: bounded, weighted, decaying")

    engine.add_trust_link("chris", "sam", "friend")
    engine.add_trust_link("chris", "sam", "friend")
    for link in engine.get_trusted_identities("chris"):
        print(f"    {link.target_id:<8} {link.relationship:<14} {link.strength:.2f}")
    print()

    header("ANALYTICS")
    stats = engine.system_analytics()
    print(f"  tiers: {stats['tiers']}")
    print(f"  cache hit rate: {stats['cache_hit_rate']:.2f}\n")

    engine.close()
    os.unlink(db_path)


if __name__ == "__main__":
    main()
