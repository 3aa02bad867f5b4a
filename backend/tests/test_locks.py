"""Tests for the per-restaurant optimizer lease."""
import pytest
from unittest.mock import MagicMock

from sitelift.services.errors import OptimizerBusy
from sitelift.services.locks import RELEASE_SCRIPT, RestaurantLock


@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    redis_mock = MagicMock()
    redis_mock.set.return_value = True
    redis_mock.register_script.return_value = MagicMock(return_value=1)
    return redis_mock


def test_acquire_sets_key_with_nx_and_ttl(mock_redis):
    lock = RestaurantLock(mock_redis, ttl_seconds=600)

    token = lock.acquire("rest_1")

    assert token is not None
    assert len(token) == 36  # UUID format
    mock_redis.set.assert_called_once_with("optimizer:lease:rest_1", token, nx=True, ex=600)


def test_acquire_returns_none_when_held(mock_redis):
    mock_redis.set.return_value = None
    lock = RestaurantLock(mock_redis)

    assert lock.acquire("rest_1") is None


def test_release_is_a_single_compare_and_delete(mock_redis):
    """Release runs one server-side script instead of GET then DELETE."""
    lock = RestaurantLock(mock_redis)
    token = lock.acquire("rest_1")

    assert lock.release("rest_1", token) is True

    mock_redis.register_script.assert_called_once_with(RELEASE_SCRIPT)
    mock_redis.register_script.return_value.assert_called_once_with(
        keys=["optimizer:lease:rest_1"], args=[token]
    )
    mock_redis.get.assert_not_called()
    mock_redis.delete.assert_not_called()


def test_release_reports_lost_lease(mock_redis):
    mock_redis.register_script.return_value.return_value = 0
    lock = RestaurantLock(mock_redis)

    assert lock.release("rest_1", "stale-token") is False


def test_release_leaves_foreign_lease(fake_redis):
    """A lease that expired and was taken by another worker is not deleted."""
    lock = RestaurantLock(fake_redis)
    mine = lock.acquire("rest_1")
    fake_redis.delete("optimizer:lease:rest_1")  # expired
    theirs = lock.acquire("rest_1")

    assert lock.release("rest_1", mine) is False
    assert lock.is_held("rest_1") is True
    assert lock.release("rest_1", theirs) is True


def test_hold_raises_when_busy(mock_redis):
    mock_redis.set.return_value = None
    lock = RestaurantLock(mock_redis)

    with pytest.raises(OptimizerBusy):
        with lock.hold("rest_1"):
            pass


def test_hold_releases_on_error(fake_redis):
    lock = RestaurantLock(fake_redis)

    with pytest.raises(RuntimeError):
        with lock.hold("rest_1"):
            assert lock.is_held("rest_1") is True
            raise RuntimeError("cycle crashed")

    assert lock.is_held("rest_1") is False


def test_leases_are_per_restaurant(fake_redis):
    lock = RestaurantLock(fake_redis)

    assert lock.acquire("rest_1") is not None
    assert lock.acquire("rest_2") is not None
    assert lock.acquire("rest_1") is None
