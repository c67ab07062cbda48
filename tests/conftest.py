import random
from datetime import datetime, timedelta

import pytest

from recengine.config import EngineParams
from recengine.database import init_db, make_engine, make_session_factory
from recengine.engine import RecommendationEngine
from recengine.models import (
    AuthorAffinity,
    Publication,
    PublicationAuthor,
    PublicationKind,
    PublicationLike,
    PublicationStatus,
    PublicationTopic,
    PublicationView,
    SavedPublication,
    TopicAffinity,
    UserSimilarity,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def fixed_clock() -> datetime:
    return NOW


class Seeder:
    """Writes fixture rows straight into the test database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, *objs):
        async with self.session_factory() as db:
            async with db.begin():
                db.add_all(objs)

    async def publication(
        self,
        pub_id,
        topics=(),
        status=PublicationStatus.PUBLISHED,
        published_at=None,
        kind=PublicationKind.ARTICLE,
        authors=(),
    ):
        await self._add(
            Publication(
                pub_id=pub_id,
                status=status,
                kind=kind,
                published_at=published_at or NOW - timedelta(days=1),
            ),
            *[PublicationTopic(pub_id=pub_id, topic_id=t) for t in topics],
            *[PublicationAuthor(pub_id=pub_id, author_id=a) for a in authors],
        )

    async def view(self, account_id, pub_id, at=None):
        await self._add(PublicationView(account_id=account_id, pub_id=pub_id, viewed_at=at or NOW))

    async def like(self, account_id, pub_id, at=None):
        await self._add(PublicationLike(account_id=account_id, pub_id=pub_id, liked_at=at or NOW))

    async def save(self, account_id, pub_id, at=None):
        await self._add(SavedPublication(account_id=account_id, pub_id=pub_id, saved_at=at or NOW))

    async def affinity(self, account_id, topic_id, score, updated=None):
        await self._add(
            TopicAffinity(
                account_id=account_id,
                topic_id=topic_id,
                score=score,
                last_updated=updated or NOW,
            )
        )

    async def author_affinity(self, account_id, author_id, score, updated=None):
        await self._add(
            AuthorAffinity(
                account_id=account_id,
                author_id=author_id,
                score=score,
                last_updated=updated or NOW,
            )
        )

    async def similarity(self, account_id, other_id, score, at=None):
        await self._add(
            UserSimilarity(
                account_id=account_id,
                other_account_id=other_id,
                similarity_score=score,
                calculated_at=at or NOW,
            )
        )


@pytest.fixture
async def db_engine():
    engine = make_engine("sqlite+aiosqlite://")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def params():
    return EngineParams()


@pytest.fixture
async def engine(session_factory, params):
    eng = RecommendationEngine(
        session_factory,
        params=params,
        clock=fixed_clock,
        rng=random.Random(7),
        timeout=5.0,
        max_limit=100,
    )
    yield eng
    await eng.runner.shutdown()
