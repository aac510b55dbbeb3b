"""Tests for EngineConfig and its environment overrides."""

from tiermind.config import EngineConfig


class TestEngineConfig:
    def test_defaults(self):
        cfg = EngineConfig()
        assert cfg.anchor_id == "chris"
        assert cfg.foreign_capacity == 100
        assert cfg.foreign_max_age == 1800
        assert cfg.cluster_threshold == 0.6
        assert cfg.cluster_quorum == 2
        assert cfg.trust_link_cap == 10

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("TIERMIND_FOREIGN_CAPACITY", "7")
        monkeypatch.setenv("TIERMIND_ECHO_THRESHOLD", "0.45")
        monkeypatch.setenv("TIERMIND_ANCHOR_ID", "alex")
        monkeypatch.setenv("TIERMIND_FOREIGN_MAX_AGE", "90.5")
        cfg = EngineConfig.from_env()
        assert cfg.foreign_capacity == 7
        assert cfg.echo_threshold == 0.45
        assert cfg.anchor_id == "alex"
        assert cfg.foreign_max_age == 90.5

    def test_bad_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("TIERMIND_FOREIGN_CAPACITY", "lots")
        monkeypatch.setenv("TIERMIND_ANCHOR_ID", "   ")
        cfg = EngineConfig.from_env()
        assert cfg.foreign_capacity == 100
        assert cfg.anchor_id == "chris"

    def test_custom_prefix(self, monkeypatch):
        monkeypatch.setenv("APP_PATTERN_CAP", "4")
        assert EngineConfig.from_env(prefix="APP_").pattern_cap == 4
