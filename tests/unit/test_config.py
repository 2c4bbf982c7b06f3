import pytest
from pydantic import ValidationError

from inbox_triage.config import Settings


def test_defaults_are_consistent():
    cfg = Settings(_env_file=None)
    assert sum(cfg.default_weights().values()) == pytest.approx(1.0)
    policies = cfg.get_stage_policies()
    thresholds = [
        policies[stage]["auto_approve_threshold"]
        for stage in ("training_wheels", "building_confidence", "earned_autonomy")
    ]
    assert thresholds == sorted(thresholds, reverse=True)
    assert policies["training_wheels"]["auto_exec_cap"] == 0


def test_weights_must_sum_to_one():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, ENSEMBLE_WEIGHT_TIER1=0.9)


def test_weights_must_be_non_negative():
    with pytest.raises(ValidationError):
        Settings(
            _env_file=None,
            ENSEMBLE_WEIGHT_TIER1=0.7,
            ENSEMBLE_WEIGHT_TIER2=-0.1,
            ENSEMBLE_WEIGHT_TIER3=0.4,
        )


def test_stage_thresholds_must_decrease():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, BUILDING_CONFIDENCE_THRESHOLD=0.97)


def test_thresholds_must_be_in_unit_interval():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, LLM_FALLBACK_THRESHOLD=1.5)


def test_concurrency_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, MAX_CONCURRENT_LLM=0)


def test_env_override(monkeypatch):
    monkeypatch.setenv("ACTION_QUEUE_CAPACITY", "25")
    assert Settings(_env_file=None).ACTION_QUEUE_CAPACITY == 25


def test_log_level_must_be_known():
    assert Settings(_env_file=None, LOG_LEVEL="warning").LOG_LEVEL == "warning"
    with pytest.raises(ValidationError):
        Settings(_env_file=None, LOG_LEVEL="LOUD")
