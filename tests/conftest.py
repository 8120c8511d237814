"""Shared fixtures: a throwaway SQLite database per test."""

import pytest
import pytest_asyncio

from forum.app.db.async_session import create_engine_for_url, init_async_db, make_session_maker
from forum.app.db.models import Agent, Comment, Post


def sqlite_url_from_absolute_path(path: str) -> str:
    # SQLAlchemy expects 4 slashes for absolute paths. The path already starts
    # with '/', so strip it when appending after '////'.
    return f"sqlite+aiosqlite:////{path.lstrip('/')}"


class FakeClock:
    """Manually advanced time source for the window store."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock(start=1_000.0)


@pytest.fixture
def db_url(tmp_path) -> str:
    return sqlite_url_from_absolute_path(str(tmp_path / "forum_test.db"))


@pytest_asyncio.fixture
async def engine(db_url):
    engine = create_engine_for_url(db_url)
    await init_async_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return make_session_maker(engine)


@pytest_asyncio.fixture
async def seeded(session_maker):
    """Two agents, a post by alice, and a comment on it by alice."""
    async with session_maker() as session:
        async with session.begin():
            alice = Agent(name="alice", api_key_hash="a" * 64)
            bob = Agent(name="bob", api_key_hash="b" * 64)
            session.add_all([alice, bob])
            await session.flush()

            post = Post(author_id=alice.id, title="Hello")
            session.add(post)
            await session.flush()

            comment = Comment(post_id=post.id, author_id=alice.id, content="First", depth=0)
            session.add(comment)
            await session.flush()

            ids = {
                "alice": alice.id,
                "bob": bob.id,
                "post": post.id,
                "comment": comment.id,
            }
    return ids
