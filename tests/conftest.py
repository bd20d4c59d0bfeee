"""Pytest configuration for denorm tests."""

import pytest

from denorm.core.config import DenormConfig
from denorm.core.denormalizer import Denormalizer
from denorm.data.database import Base, make_engine, make_session_factory

from blog_models import Article, Badge, Post, Shelf, Tally, User

POST_TRIGGERS = {
    "denormalized_user_name": ["user"],
    "denormalized_comments_count": ["comments"],
    "denormalized_identical_post_count": "always",
}


def register_blog(denormalizer: Denormalizer) -> Denormalizer:
    """Register the blog models the way an application would at startup."""
    denormalizer.register(
        Post,
        triggers_by_field=POST_TRIGGERS,
        invalid_when_null_fields=["denormalized_body_length"],
    )
    denormalizer.register(Article, triggers_by_field={"denormalized_keywords": ["title"]})
    denormalizer.register(Tally)
    denormalizer.register(Badge)
    denormalizer.register(Shelf)
    return denormalizer


@pytest.fixture
def denormalizer():
    return register_blog(Denormalizer(DenormConfig()))


@pytest.fixture
def db_engine():
    """
    Create a fresh in-memory database for each test.
    This ensures tests don't interfere with each other.
    """
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session(db_engine, denormalizer):
    factory = make_session_factory(engine=db_engine, denormalizer=denormalizer, expire_on_commit=False)
    db = factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def ogden(session):
    user = User(name="Ogden Nash")
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def poetry(ogden):
    """An unsaved post by ogden."""
    return Post(
        subject="Further Reflections on Parsley",
        body="Parsley\nIs gharsley.",
        user=ogden,
    )


@pytest.fixture(autouse=True)
def _reset_tally_calls():
    Tally.computed_ids.clear()
    yield
    Tally.computed_ids.clear()
