"""Tests for SessionConfig."""

import dataclasses

import pytest

from tinysession.core.config import SessionConfig, default_n_threads


class TestSessionConfig:
    def test_default_values(self):
        config = SessionConfig()
        assert config.n_ctx == 1024
        assert config.n_batch == 512
        assert config.max_tokens == 128
        assert config.temp == 0.8
        assert config.min_p == 0.05
        assert config.top_p == 0.95
        assert config.top_k == 40
        assert config.penalty_last_n == 64
        assert config.penalty_repeat == 1.1
        assert config.penalty_freq == 0.1
        assert config.penalty_present == 0.0

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            SessionConfig().n_ctx = 2048

    def test_replace_returns_copy(self):
        config = SessionConfig()
        other = config.replace(max_tokens=3)
        assert other.max_tokens == 3
        assert config.max_tokens == 128

    @pytest.mark.parametrize("changes", [
        {"n_ctx": 0},
        {"n_batch": -1},
        {"top_p": 1.5},
        {"min_p": -0.1},
        {"penalty_last_n": -2},
        {"n_threads": 0},
    ])
    def test_validation(self, changes):
        with pytest.raises(ValueError):
            SessionConfig(**changes)

    def test_threads_auto(self):
        config = SessionConfig()
        assert config.threads == default_n_threads()
        assert 1 <= config.threads <= 8
        assert config.threads_batch == config.threads

    def test_threads_explicit(self):
        config = SessionConfig(n_threads=3, n_threads_batch=6)
        assert config.threads == 3
        assert config.threads_batch == 6


class TestFromDict:
    def test_bridge_parameter_names(self):
        config = SessionConfig.from_dict({
            "n_ctx": 2048,
            "max_tokens": 64,
            "temp": 0.5,
            "penalties_last_n": 32,
            "penalties_repeat": 1.2,
            "penalties_freq": 0.2,
            "penalties_pres": 0.3,
        })
        assert config.n_ctx == 2048
        assert config.max_tokens == 64
        assert config.temp == 0.5
        assert config.penalty_last_n == 32
        assert config.penalty_repeat == 1.2
        assert config.penalty_freq == 0.2
        assert config.penalty_present == 0.3

    def test_unknown_keys_and_none_ignored(self):
        config = SessionConfig.from_dict({"model_path": "/x.gguf", "top_k": None, "top_p": 0.9})
        assert config.top_k == 40
        assert config.top_p == 0.9
