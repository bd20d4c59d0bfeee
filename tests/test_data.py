"""
Tests for the data layer: record inspection, the row store and column types.
"""

import pytest
import yaml
from sqlalchemy import text

from denorm.data.inspector import SQLAlchemyInspector, attribute_key
from denorm.data.store import SQLAlchemyStore
from denorm.data.types import YAMLEncoded
from denorm.engine.cycle import RecomputeCycle

from blog_models import Article, Comment, Post, User


@pytest.fixture
def inspector():
    return SQLAlchemyInspector()


@pytest.fixture
def store(session, inspector):
    return SQLAlchemyStore(session, inspector)


class TestInspector:
    def test_field_names(self, inspector):
        names = inspector.field_names(Comment)
        assert names == frozenset({"id", "post_id", "body", "created_at", "updated_at"})

    def test_associations(self, inspector):
        assert inspector.single_association_names(Post) == frozenset({"user"})
        assert inspector.collection_association_names(Post) == frozenset({"comments"})
        assert inspector.related_type(Post, "user") is User

    def test_many_to_one_foreign_keys(self, inspector):
        assert inspector.many_to_one_foreign_keys(Post) == {"user": ("user_id",)}
        assert inspector.many_to_one_foreign_keys(User) == {}

    def test_primary_key_names(self, inspector):
        assert inspector.primary_key_names(Post) == ("id",)

    def test_new_instance_changes(self, inspector, ogden):
        post = Post(subject="x", user=ogden)
        assert inspector.is_new(post)
        assert inspector.changed_field_names(post) == frozenset({"subject", "user"})
        assert inspector.identity(post) is None

    def test_persisted_instance_changes(self, inspector, session, poetry):
        session.add(poetry)
        session.commit()
        assert not inspector.is_new(poetry)
        assert not inspector.has_changed(poetry)
        assert inspector.identity(poetry) == (poetry.id,)

        poetry.comments.append(Comment(body="hi"))
        assert not inspector.has_changed(poetry)

        poetry.subject = "Changed"
        assert inspector.changed_field_names(poetry) == frozenset({"subject"})

    def test_attribute_key(self):
        assert attribute_key("name") == "name"
        assert attribute_key(User.name) == "name"


class TestStore:
    def test_update_matching_mapping_filter(self, store, session, ogden):
        other = User(name="Someone")
        session.add(other)
        session.commit()

        count = store.update_matching(User, {"name": "Renamed"}, {"id": ogden.id})
        assert count == 1
        assert ogden.name == "Renamed"
        assert other.name == "Someone"

    def test_select_matching_ordered_and_limited(self, store, session):
        session.add_all([User(name=f"user {i}") for i in range(3)])
        session.commit()
        users = store.select_matching(User, "name LIKE 'user %'", limit=2)
        assert [user.name for user in users] == ["user 0", "user 1"]

    def test_update_instance_requires_persisted(self, store):
        with pytest.raises(ValueError):
            store.update_instance(User(name="new"), {"name": "x"})

    def test_unsupported_filter(self, store):
        with pytest.raises(TypeError):
            store.criteria(User, 42)

    def test_serialized_columns(self, store):
        assert store.is_serialized(Article, "denormalized_keywords")
        assert not store.is_serialized(Article, "title")
        assert store.encode_value(Article, "title", "plain") == "plain"
        assert store.encode_value(Article, "denormalized_keywords", None) is None

    def test_write_committed_leaves_instance_clean(self, store, session, ogden):
        store.write_committed(ogden, {"name": "Quiet"})
        assert ogden.name == "Quiet"
        assert ogden not in session.dirty

    def test_read_and_write_field(self, store, ogden):
        store.write_field(ogden, User.name, "Written")
        assert store.read_field(ogden, "name") == "Written"


def test_yaml_encoded_round_trip(session):
    article = Article(title="Thyme Sage")
    session.add(article)
    session.commit()
    raw = session.execute(text("SELECT denormalized_keywords FROM articles")).scalar()
    assert raw == "- sage\n- thyme\n"
    assert yaml.safe_load(raw) == ["sage", "thyme"]
    assert YAMLEncoded().process_result_value(None, None) is None


class TestCycle:
    def test_mark_and_reset(self, poetry):
        cycle = RecomputeCycle()
        assert cycle.is_empty()
        cycle.mark(poetry, "denormalized_user_name")
        assert cycle.recomputed(poetry) == frozenset({"denormalized_user_name"})
        cycle.reset(poetry)
        assert cycle.is_empty()

    def test_reset_everything(self, poetry, ogden):
        cycle = RecomputeCycle()
        cycle.mark(poetry, "a")
        cycle.mark(ogden, "b")
        cycle.reset()
        assert not cycle.was_recomputed(ogden, "b")
