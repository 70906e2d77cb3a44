"""
Per-App throttle tests

Redis is replaced by a small in-process stand-in that understands the acquire
script and ZREM, with member scores and key expiry read against a fake clock.
"""
import pytest

from core.config import settings
from services import app_throttle
from services.app_throttle import ACQUIRE_LUA, UNTHROTTLED, app_parallelism, app_slot, slot_key


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeRedis:
    def __init__(self, clock):
        self.clock = clock
        self.zsets = {}
        self.expires_at = {}
        self.fail = False

    def _members(self, key):
        if key in self.expires_at and self.expires_at[key] <= self.clock():
            self.zsets.pop(key, None)
            self.expires_at.pop(key, None)
        return self.zsets.setdefault(key, {})

    def eval(self, script, numkeys, key, *args):
        if self.fail:
            raise ConnectionError("redis went away")
        if script != ACQUIRE_LUA:
            raise AssertionError("unexpected script")
        now, limit, token, expires_at, ttl = float(args[0]), int(args[1]), args[2], float(args[3]), int(args[4])
        members = self._members(key)
        for member, score in list(members.items()):
            if score <= now:
                del members[member]
        if len(members) >= limit:
            return 0
        members[token] = expires_at
        self.expires_at[key] = self.clock() + ttl
        return 1

    def zrem(self, key, token):
        members = self._members(key)
        removed = 1 if members.pop(token, None) is not None else 0
        if not members:
            self.zsets.pop(key, None)
            self.expires_at.pop(key, None)
        return removed

    def holders(self, app_id):
        return len(self._members(slot_key(app_id)))


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(app_throttle, "_now", fake)
    return fake


@pytest.fixture
def fake_redis(monkeypatch, clock):
    client = FakeRedis(clock)
    monkeypatch.setattr(app_throttle, "get_redis_client", lambda: client)
    return client


class TestAppSlot:

    def test_slots_are_capped_per_app(self, fake_redis):
        assert app_throttle.acquire_app_slot("app_1", limit=2, timeout_s=0)
        assert app_throttle.acquire_app_slot("app_1", limit=2, timeout_s=0)
        assert app_throttle.acquire_app_slot("app_1", limit=2, timeout_s=0) is None
        assert app_throttle.acquire_app_slot("app_2", limit=2, timeout_s=0)

    def test_context_manager_releases(self, fake_redis):
        with app_slot("app_1", 1, timeout_s=0) as acquired:
            assert acquired
            assert fake_redis.holders("app_1") == 1
            with app_slot("app_1", 1, timeout_s=0) as second:
                assert not second
            assert fake_redis.holders("app_1") == 1
        assert slot_key("app_1") not in fake_redis.zsets

    def test_release_on_error(self, fake_redis):
        with pytest.raises(RuntimeError):
            with app_slot("app_1", 1, timeout_s=0):
                raise RuntimeError("connector blew up")
        assert fake_redis.zsets == {}

    def test_long_running_holder_keeps_its_slot(self, fake_redis, clock):
        token = app_throttle.acquire_app_slot("app_1", limit=1, timeout_s=0)
        assert token

        # Well past any acquire timeout, still inside the task time limit.
        clock.now += settings.TASK_TIME_LIMIT_S - 60
        assert app_throttle.acquire_app_slot("app_1", limit=1, timeout_s=0) is None
        assert fake_redis.holders("app_1") == 1

    def test_every_acquire_refreshes_the_key(self, fake_redis, clock):
        first = app_throttle.acquire_app_slot("app_1", limit=2, timeout_s=0)
        clock.now += settings.APP_SLOT_TTL_S - 10
        second = app_throttle.acquire_app_slot("app_1", limit=2, timeout_s=0)
        assert first and second

        # The first holder has expired; the second is still counted.
        clock.now += 20
        assert fake_redis.holders("app_1") == 2
        assert app_throttle.acquire_app_slot("app_1", limit=2, timeout_s=0)
        assert app_throttle.acquire_app_slot("app_1", limit=2, timeout_s=0) is None

    def test_dead_holder_expires(self, fake_redis, clock):
        assert app_throttle.acquire_app_slot("app_1", limit=1, timeout_s=0)
        clock.now += settings.APP_SLOT_TTL_S + 1
        assert app_throttle.acquire_app_slot("app_1", limit=1, timeout_s=0)

    def test_stale_release_does_not_free_another_holder(self, fake_redis, clock):
        stale = app_throttle.acquire_app_slot("app_1", limit=1, timeout_s=0)
        clock.now += settings.APP_SLOT_TTL_S + 1
        current = app_throttle.acquire_app_slot("app_1", limit=1, timeout_s=0)
        assert current and current != stale

        app_throttle.release_app_slot("app_1", stale)
        assert fake_redis.holders("app_1") == 1
        assert app_throttle.acquire_app_slot("app_1", limit=1, timeout_s=0) is None

    def test_fails_open_without_redis(self, no_redis):
        for _ in range(5):
            assert app_throttle.acquire_app_slot("app_1", limit=1, timeout_s=0) == UNTHROTTLED

    def test_fails_open_when_redis_errors(self, fake_redis):
        fake_redis.fail = True
        with app_slot("app_1", 1, timeout_s=0) as acquired:
            assert acquired


class TestParallelism:

    def test_connector_parallelism(self, registry, app):
        assert app_parallelism(registry, app) == 2

    def test_default_when_connector_is_unknown(self, registry, app):
        app.type = "gone"
        assert app_parallelism(registry, app) == 4
