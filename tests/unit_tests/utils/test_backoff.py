import pytest

from backend_ops.utils.backoff import BackoffPolicy


def test_delays_grow_exponentially():
    policy = BackoffPolicy(max_attempts=4, initial_delay=1.0, multiplier=2.0)
    assert list(policy.delays()) == [1.0, 2.0, 4.0]


def test_delay_is_capped():
    policy = BackoffPolicy(max_attempts=6, initial_delay=5.0, multiplier=3.0, max_delay=20.0)
    assert policy.delay_for(1) == 5.0
    assert policy.delay_for(2) == 15.0
    assert policy.delay_for(3) == 20.0
    assert policy.delay_for(5) == 20.0


def test_no_delay_after_last_attempt():
    policy = BackoffPolicy(max_attempts=3, initial_delay=1.0, multiplier=2.0)
    assert policy.max_total_delay == 3.0
    assert len(list(BackoffPolicy(max_attempts=1).delays())) == 0


@pytest.mark.parametrize("kwargs", [
    {"max_attempts": 0},
    {"initial_delay": -1},
    {"multiplier": 0.5},
])
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)


def test_policies_from_settings(settings):
    health = BackoffPolicy.for_health(settings)
    assert health.max_attempts == settings.health_max_attempts
    assert health.multiplier == settings.health_backoff_multiplier

    transfer = BackoffPolicy.for_transfer(settings)
    assert transfer.max_attempts == settings.transfer_attempts
    assert transfer.initial_delay == 0
