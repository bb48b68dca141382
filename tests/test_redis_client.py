from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from adspider.redis_client import MAX_BACKOFF_DELAY, RedisConnection

pytestmark = pytest.mark.asyncio


def failing_client():
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
    return client


@patch("adspider.redis_client.asyncio.sleep", new_callable=AsyncMock)
async def test_reconnect_is_bounded_and_backoff_capped(mock_sleep):
    connection = RedisConnection(url="redis://test", max_attempts=40, client_factory=failing_client)

    assert await connection.get_client() is None
    assert connection.available is False

    delays = [c.args[0] for c in mock_sleep.await_args_list]
    assert len(delays) == 39
    assert delays[0] == pytest.approx(0.1)
    assert max(delays) == MAX_BACKOFF_DELAY


@patch("adspider.redis_client.asyncio.sleep", new_callable=AsyncMock)
async def test_recovers_on_a_later_attempt(mock_sleep):
    good = MagicMock()
    good.ping = AsyncMock(return_value=True)
    clients = iter([failing_client(), failing_client(), good])
    connection = RedisConnection(url="redis://test", max_attempts=5, client_factory=lambda: next(clients))

    assert await connection.get_client() is good
    assert connection.available is True
    assert mock_sleep.await_count == 2

    # Cached until discarded
    assert await connection.get_client() is good
    connection.discard()
    assert connection.available is False


async def test_check_discards_client_on_ping_failure(fake_redis):
    connection = RedisConnection(url="redis://test", max_attempts=1, client_factory=lambda: fake_redis)
    assert await connection.check() is True

    fake_redis.fail = True
    assert await connection.check() is False
    assert connection.available is False


async def test_close_closes_client(fake_redis):
    connection = RedisConnection(url="redis://test", max_attempts=1, client_factory=lambda: fake_redis)
    await connection.get_client()

    await connection.close()

    assert fake_redis.closed is True
