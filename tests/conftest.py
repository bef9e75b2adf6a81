import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `scoreboard` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from scoreboard.config import Settings  # noqa: E402
from scoreboard.errors import CacheUnavailable  # noqa: E402
from scoreboard.init_db import init_db  # noqa: E402
from scoreboard.service import ScoreboardService  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemote:
    """In-process remote tier with TTLs on a controllable clock.

    Set ``down = True`` to make every call fail like an unreachable server.
    """

    def __init__(self, clock):
        self.clock = clock
        self.data = {}
        self.expiry = {}
        self.indexes = {}
        self.down = False
        self.closed = False
        self.calls = []

    def _check(self, op):
        self.calls.append(op)
        if self.down:
            raise CacheUnavailable(f"{op}: connection refused")

    def _alive(self, key):
        exp = self.expiry.get(key)
        if exp is not None and self.clock() >= exp:
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    def get(self, key):
        self._check("get")
        return self.data[key] if self._alive(key) else None

    def set(self, key, value, ttl_seconds=None):
        self._check("set")
        self.data[key] = value
        if ttl_seconds:
            self.expiry[key] = self.clock() + ttl_seconds
        else:
            self.expiry.pop(key, None)

    def delete(self, *keys):
        self._check("delete")
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    def incr(self, key, ttl_seconds):
        self._check("incr")
        value = int(self.data[key]) + 1 if self._alive(key) else 1
        self.data[key] = str(value)
        if value == 1:
            self.expiry[key] = self.clock() + ttl_seconds
        return value

    def ping(self):
        self._check("ping")
        return True

    def index_add(self, index, key):
        self._check("index_add")
        self.indexes.setdefault(index, set()).add(key)

    def index_members(self, index):
        self._check("index_members")
        return set(self.indexes.get(index, set()))

    def index_remove(self, index, keys):
        self._check("index_remove")
        self.indexes.get(index, set()).difference_update(keys)

    def index_prune(self, index):
        self._check("index_prune")
        members = self.indexes.get(index, set())
        dead = {key for key in members if not self._alive(key)}
        members -= dead
        return len(dead)

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote(clock):
    return FakeRemote(clock)


@pytest.fixture
def settings():
    # no background sweeper in tests; sweeps are driven explicitly
    return Settings(database_url="sqlite://", cache_sweep_interval=0)


@pytest.fixture
def engine(tmp_path):
    eng = init_db(f"sqlite:///{tmp_path / 'scoreboard.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def service(settings, engine, remote, clock):
    svc = ScoreboardService(settings, engine, remote, clock=clock)
    yield svc
    svc.close()
