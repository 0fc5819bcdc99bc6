"""Tests for configuration loading, validation and copy-on-write updates."""

import pytest

from tiermem.models.core import FusionWeights
from tiermem.utils.config import (ConfigStore, ConfigurationError, MemoryControllerConfig, load_config,
                                  load_controller_config, validate_config, validate_fusion_weights)


def test_configuration_error_is_a_value_error():
    """Callers catching ValueError also see configuration problems."""
    assert issubclass(ConfigurationError, ValueError)


def test_defaults_are_valid():
    """The default configuration passes validation."""
    cfg = validate_config(MemoryControllerConfig())

    assert cfg.l1_max_turns == 20
    assert cfg.l3_promotion_threshold == pytest.approx(7.5)
    assert cfg.default_fusion_weights == FusionWeights(0.4, 0.4, 0.2)


@pytest.mark.parametrize('weights', [
    FusionWeights(0.0, 0.0, 0.0),
    FusionWeights(-0.1, 0.5, 0.5),
    FusionWeights(1.5, 0.0, 0.0),
    FusionWeights(float('nan'), 0.5, 0.5),
    FusionWeights(True, 0.5, 0.5),
])
def test_invalid_fusion_weights(weights):
    """Weights must be finite numbers in [0, 1] with a positive sum."""
    with pytest.raises(ConfigurationError):
        validate_fusion_weights(weights)


def test_weights_need_not_sum_to_one():
    """Any positive in-range triple is accepted."""
    assert validate_fusion_weights(FusionWeights(1.0, 1.0, 0.0)) == FusionWeights(1.0, 1.0, 0.0)


@pytest.mark.parametrize('changes', [
    {'l1_max_turns': 0},
    {'l3_vector_dimension': -1},
    {'l2_significance_threshold': 10.5},
    {'importance_decay_rate': 0},
    {'access_boost_factor': 0.9},
    {'store_timeout_seconds': 0},
    {'tier_failure_policy': 'ignore'},
    {'token_price': -1},
])
def test_invalid_settings_are_rejected(changes):
    """Out-of-range values never reach a published config."""
    with pytest.raises(ConfigurationError):
        validate_config(MemoryControllerConfig(**changes))


def test_store_rejects_invalid_initial_config():
    """Construction validates before any use."""
    with pytest.raises(ConfigurationError):
        ConfigStore(MemoryControllerConfig(l1_max_tokens=0))


def test_update_publishes_new_version():
    """Each update bumps the version and leaves older snapshots as they were."""
    store = ConfigStore(MemoryControllerConfig())
    before = store.current()

    after = store.update(l2_significance_threshold=3.0)

    assert after.version == before.version + 1
    assert after.l2_significance_threshold == 3.0
    assert before.l2_significance_threshold == 5.0
    assert store.current() is after


def test_failed_update_keeps_current_config():
    """An invalid update does not change the published snapshot."""
    store = ConfigStore(MemoryControllerConfig())
    before = store.current()

    with pytest.raises(ConfigurationError):
        store.update(l2_significance_threshold=-1)

    assert store.current() is before


@pytest.mark.parametrize('changes', [{'no_such_field': 1}, {'version': 7}])
def test_update_rejects_unknown_and_read_only_fields(changes):
    """Only real, writable fields can be updated."""
    with pytest.raises(ConfigurationError):
        ConfigStore(MemoryControllerConfig()).update(**changes)


def test_controller_config_from_environment(monkeypatch):
    """TIERMEM_* variables override the defaults."""
    monkeypatch.setenv('TIERMEM_L1_MAX_TURNS', '5')
    monkeypatch.setenv('TIERMEM_WEIGHT_L1', '0.7')
    monkeypatch.setenv('TIERMEM_TIER_FAILURE_POLICY', 'fail_closed')

    cfg = load_controller_config()

    assert cfg.l1_max_turns == 5
    assert cfg.default_fusion_weights.w_L1 == 0.7
    assert cfg.tier_failure_policy == 'fail_closed'


def test_app_config_from_environment(monkeypatch):
    """Backends and store settings come from the environment."""
    monkeypatch.setenv('TIERMEM_EMBEDDING_BACKEND', 'hash')
    monkeypatch.setenv('TIERMEM_VECTOR_BACKEND', 'memory')
    monkeypatch.setenv('NEPTUNE_IAM_AUTH', 'false')

    app_config = load_config()

    assert app_config.embedding_backend == 'hash'
    assert app_config.vector_backend == 'memory'
    assert app_config.neptune.use_iam_auth is False
