import pytest

from cx_replay.replay.backoff import BackoffPolicy, compute_backoff_delay


@pytest.mark.parametrize(
    "attempt, expected",
    [
        (1, 1000),
        (2, 1500),
        (3, 2250),
        (4, 3375),
    ],
)
def test_delay_grows_geometrically(attempt, expected):
    assert compute_backoff_delay(attempt, 1000, 1.5) == pytest.approx(expected)


def test_delay_is_capped():
    assert compute_backoff_delay(20, 1000, 2.0, maximum=5000) == 5000


def test_zero_base_or_invalid_attempt_means_no_delay():
    assert compute_backoff_delay(3, 0) == 0.0
    assert compute_backoff_delay(0, 1000) == 0.0


def test_policy_schedule():
    policy = BackoffPolicy(base_delay=100, multiplier=2, max_delay=350)

    assert policy.schedule(5) == [100, 200, 350, 350]
    assert policy.schedule(1) == []
