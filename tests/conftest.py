from collections import defaultdict, deque

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from adspider.job_store import JobStore
from adspider.models import JobSpec
from adspider.redis_client import RedisConnection


class FakePipeline:
    """
    Transactional pipeline over a FakeRedis.

    Commands are buffered and applied together on execute(), or not at all.
    After watch() and until multi() commands run immediately, as in redis-py.
    A watched key written by anyone else makes execute() raise WatchError.
    """
    def __init__(self, redis):
        self.redis = redis
        self.commands = []
        self.watched = None
        self.in_multi = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.reset()

    def reset(self):
        self.commands = []
        self.watched = None
        self.in_multi = False

    def _command(self, name, *args, **kwargs):
        if self.watched is not None and not self.in_multi:
            return getattr(self.redis, name)(*args, **kwargs)
        self.commands.append((name, args, kwargs))
        return self

    async def watch(self, *names):
        self.redis._check("watch")
        self.watched = {name: self.redis.versions[name] for name in names}
        return True

    async def unwatch(self):
        self.watched = None
        return True

    def multi(self):
        self.in_multi = True

    def hset(self, *args, **kwargs):
        return self._command("hset", *args, **kwargs)

    def hget(self, *args, **kwargs):
        return self._command("hget", *args, **kwargs)

    def lpush(self, *args, **kwargs):
        return self._command("lpush", *args, **kwargs)

    def rpush(self, *args, **kwargs):
        return self._command("rpush", *args, **kwargs)

    def lrem(self, *args, **kwargs):
        return self._command("lrem", *args, **kwargs)

    def delete(self, *args, **kwargs):
        return self._command("delete", *args, **kwargs)

    async def execute(self):
        commands, watched = self.commands, self.watched
        self.reset()
        hook, self.redis.before_exec = self.redis.before_exec, None
        if hook is not None:
            await hook()
        # EXEC is all or nothing: a failure on any queued command applies none
        self.redis._check("exec")
        for name, _, _ in commands:
            self.redis._check(name)
        if watched and any(self.redis.versions[k] != v for k, v in watched.items()):
            raise WatchError("Watched variable changed.")
        return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in commands]


class FakeRedis:
    """
    In-memory stand-in for the redis.asyncio client, covering the commands
    the job store uses. Set `fail = True` to make every command raise, or
    put command names in `fail_on` to break just those. `before_exec` is
    awaited once, right before the next transaction executes.
    """
    def __init__(self):
        self.hashes = defaultdict(dict)
        self.lists = defaultdict(deque)
        self.versions = defaultdict(int)
        self.fail = False
        self.fail_on = set()
        self.before_exec = None
        self.closed = False

    def _check(self, command=None):
        if self.fail or command in self.fail_on:
            raise RedisConnectionError("Connection refused")

    def _touch(self, name):
        self.versions[name] += 1

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def ping(self):
        self._check("ping")
        return True

    async def hset(self, name, key=None, value=None, mapping=None):
        self._check("hset")
        if mapping:
            self.hashes[name].update(mapping)
        if key is not None:
            self.hashes[name][key] = value
        self._touch(name)
        return 1

    async def hget(self, name, key):
        self._check("hget")
        return self.hashes.get(name, {}).get(key)

    async def lpush(self, name, *values):
        self._check("lpush")
        for value in values:
            self.lists[name].appendleft(value)
        self._touch(name)
        return len(self.lists[name])

    async def rpush(self, name, *values):
        self._check("rpush")
        self.lists[name].extend(values)
        self._touch(name)
        return len(self.lists[name])

    async def rpop(self, name):
        self._check("rpop")
        items = self.lists.get(name)
        if not items:
            return None
        self._touch(name)
        return items.pop()

    async def lrem(self, name, count, value):
        self._check("lrem")
        items = self.lists.get(name, deque())
        kept = deque(v for v in items if v != value)
        removed = len(items) - len(kept)
        self.lists[name] = kept
        self._touch(name)
        return removed

    async def lrange(self, name, start, end):
        self._check("lrange")
        items = list(self.lists.get(name, ()))
        end = len(items) if end == -1 else end + 1
        return items[start:end]

    async def delete(self, *names):
        self._check("delete")
        removed = 0
        for name in names:
            removed += int(self.hashes.pop(name, None) is not None)
            removed += int(self.lists.pop(name, None) is not None)
            self._touch(name)
        return removed

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def connection(fake_redis):
    return RedisConnection(url="redis://test", max_attempts=1, client_factory=lambda: fake_redis)


@pytest.fixture
def store(connection):
    return JobStore(connection)


@pytest.fixture
def make_spec():
    def _make(job_id="job1", max_items=50, **kwargs):
        return JobSpec(
            job_id=job_id,
            url=f"https://www.facebook.com/ads/library/?view_all_page_id=1234{job_id}",
            max_items=max_items,
            **kwargs,
        )
    return _make
