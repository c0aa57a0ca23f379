import os
import random
import tempfile

# Must be set before casino_engine.db / casino_engine.app are imported
_DB_DIR = tempfile.mkdtemp(prefix="casino-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/app.db"
os.environ["CRASH_REAPER_INTERVAL"] = "0"
os.environ["ADMIN_TOKEN"] = "test-admin"

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from casino_engine.config import ConfigStore, EngineConfig, GameKind, GamePolicy
from casino_engine.db import get_or_create_player, init_db
from casino_engine.engine import CasinoEngine


class ScriptedRandom:
    """
    random.Random stand-in: replays queued floats (random()) and ints
    (randint/randrange), then falls back to a seeded stream.
    """

    def __init__(self, floats=(), ints=(), seed=0):
        self.floats = list(floats)
        self.ints = list(ints)
        self._fallback = random.Random(seed)

    def random(self):
        if self.floats:
            return self.floats.pop(0)
        return self._fallback.random()

    def randint(self, a, b):
        if self.ints:
            value = self.ints.pop(0)
            assert a <= value <= b, f"scripted {value} outside [{a}, {b}]"
            return value
        return self._fallback.randint(a, b)

    def randrange(self, n):
        if self.ints:
            return self.ints.pop(0)
        return self._fallback.randrange(n)


def flat_config(**sections) -> EngineConfig:
    """Snapshot whose policy never adjusts odds, forces losses or boosts."""
    data = {"policies": {kind: GamePolicy() for kind in GameKind}}
    data.update(sections)
    return EngineConfig(**data)


def scripted(**kwargs):
    """rng_factory handing out one ScriptedRandom per bet."""
    return lambda: ScriptedRandom(**kwargs)


@pytest.fixture
async def db_engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/ledger.db")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_maker(db_engine):
    return async_sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest.fixture
async def player(session):
    return await get_or_create_player(session, "alice")


@pytest.fixture
def make_engine():
    def _make(config=None, rng_factory=None):
        store = ConfigStore(config or flat_config())
        if rng_factory is None:
            return CasinoEngine(store, rng_factory=lambda: random.Random(1234))
        return CasinoEngine(store, rng_factory=rng_factory)
    return _make
