"""
Tests for bulk unset/recompute and the direct-UPDATE write path.
"""

import pickle
from datetime import timedelta

import pytest
import yaml
from sqlalchemy import text

from blog_models import Article, Badge, Post, Shelf, Tally, User


@pytest.fixture
def bulk(denormalizer, session):
    return denormalizer.bulk(session)


def raw_row(session, table, row_id, *columns):
    """Read columns straight from the table, bypassing the ORM."""
    sql = f"SELECT {', '.join(columns)} FROM {table} WHERE id = :id"
    return session.execute(text(sql), {"id": row_id}).one()


# ── Unset ────────────────────────────────────────────────────────────────

class TestUnsetForAll:
    def test_unset_matching_rows(self, denormalizer, session, bulk, ogden, poetry):
        other = User(name="Dorothy Parker")
        theirs = Post(subject="Resume", body="Razors pain you", user=other)
        session.add_all([poetry, other, theirs])
        session.commit()

        unset = bulk.unset_for_all(Post, ["denormalized_user_name"], {"user_id": ogden.id})
        assert unset == {"denormalized_user_name", "denormalized_user_name_computed_at"}

        row = raw_row(session, "posts", poetry.id, "denormalized_user_name", "denormalized_user_name_computed_at")
        assert tuple(row) == (None, None)
        assert denormalizer.is_unset(poetry, "denormalized_user_name")

        row = raw_row(session, "posts", theirs.id, "denormalized_user_name")
        assert row[0] == "Dorothy Parker"
        assert not denormalizer.is_unset(theirs, "denormalized_user_name")

    def test_unset_every_row(self, denormalizer, session, bulk, poetry):
        session.add(poetry)
        session.commit()
        bulk.unset_for_all(Post, "denormalized_body_length")
        assert denormalizer.is_unset(poetry, "denormalized_body_length")
        assert not denormalizer.is_unset(poetry, "denormalized_user_name")

    def test_sql_fragment_filter(self, denormalizer, session, bulk, poetry):
        session.add(poetry)
        session.commit()
        bulk.unset_for_all(Post, ["denormalized_comments_count"], "subject = 'Nothing Matches'")
        assert not denormalizer.is_unset(poetry, "denormalized_comments_count")

    def test_field_without_timestamp(self, session, bulk, poetry):
        session.add(poetry)
        session.commit()
        unset = bulk.unset_for_all(Post, "denormalized_identical_post_count")
        assert unset == {"denormalized_identical_post_count"}
        assert raw_row(session, "posts", poetry.id, "denormalized_identical_post_count")[0] is None

    def test_unknown_fields_issue_no_statement(self, session, bulk, poetry, monkeypatch):
        session.add(poetry)
        session.commit()

        def fail(*args, **kwargs):
            raise AssertionError("no UPDATE expected")

        monkeypatch.setattr(bulk.store, "update_matching", fail)
        assert bulk.unset_for_all(Post, ["phony_attribute_name"]) == set()
        assert bulk.unset_for_instance(poetry, []) == set()

    def test_unknown_filter_column_rejected(self, bulk):
        with pytest.raises(ValueError):
            bulk.unset_for_all(Post, "denormalized_user_name", {"no_such_column": 1})


def test_select_unset_follows_instance_unset(bulk, session, poetry):
    """Mirrors with_unset_denormalized_values: phony names change nothing."""
    session.add(poetry)
    session.commit()
    assert poetry not in bulk.select_unset(Post)

    bulk.unset_for_instance(poetry, "phony_attribute_name")
    assert poetry not in bulk.select_unset(Post)

    bulk.unset_for_instance(poetry, "denormalized_user_name")
    assert poetry in bulk.select_unset(Post)


def test_unset_all_for_instance(denormalizer, session, bulk, poetry):
    session.add(poetry)
    session.commit()
    unset = bulk.unset_all_for_instance(poetry)
    assert "denormalized_identical_post_count" in unset
    assert "denormalized_body_length_computed_at" in unset
    assert denormalizer.evaluator.any_unset(poetry)


def test_type_without_timestamps_never_selected(session, bulk):
    session.add(Badge(label="gold"))
    session.commit()
    bulk.unset_for_all(Badge, "denormalized_shout")
    assert bulk.select_unset(Badge) == []
    assert bulk.recompute_all_unset(Badge) == 0


# ── Recompute ────────────────────────────────────────────────────────────

class TestRecomputeAllUnset:
    def test_only_unset_rows_recomputed(self, session, bulk):
        tallies = [Tally(amount=amount) for amount in range(1, 6)]
        session.add_all(tallies)
        session.commit()
        Tally.computed_ids.clear()

        targets = [tallies[0].id, tallies[2].id, tallies[4].id]
        untouched = tallies[1].denormalized_double_computed_at
        bulk.unset_for_all(Tally, ["denormalized_double"], Tally.id.in_(targets))

        assert bulk.recompute_all_unset(Tally, limit=10) == 3
        assert sorted(Tally.computed_ids) == sorted(targets)

        session.commit()
        for tally in tallies:
            session.refresh(tally)
            assert tally.denormalized_double == tally.amount * 2
        assert tallies[1].denormalized_double_computed_at == untouched
        assert bulk.select_unset(Tally) == []

    def test_limit(self, session, bulk):
        session.add_all([Tally(amount=amount) for amount in range(4)])
        session.commit()
        bulk.unset_for_all(Tally, "denormalized_double")
        assert bulk.recompute_all_unset(Tally, limit=3) == 3
        assert len(bulk.select_unset(Tally)) == 1

    def test_limit_from_config(self, denormalizer, session, bulk):
        denormalizer.config.bulk_recompute_limit = 2
        session.add_all([Tally(amount=amount) for amount in range(4)])
        session.commit()
        bulk.unset_for_all(Tally, "denormalized_double")
        assert bulk.recompute_all_unset(Tally) == 2

    def test_explicit_none_is_unbounded(self, denormalizer, session, bulk):
        denormalizer.config.bulk_recompute_limit = 2
        session.add_all([Tally(amount=amount) for amount in range(4)])
        session.commit()
        bulk.unset_for_all(Tally, "denormalized_double")
        assert bulk.recompute_all_unset(Tally, limit=None) == 4
        assert bulk.select_unset(Tally) == []


class TestBulkPath:
    def test_instance_left_clean(self, denormalizer, session, bulk, poetry):
        session.add(poetry)
        session.commit()
        bulk.unset_for_instance(poetry, "denormalized_user_name")

        updates = denormalizer.engine.recompute_via_bulk_path(poetry, bulk.store)
        assert "denormalized_user_name" in updates
        assert "denormalized_user_name_computed_at" in updates
        assert poetry.denormalized_user_name == "Ogden Nash"
        assert poetry not in session.dirty
        assert raw_row(session, "posts", poetry.id, "denormalized_user_name")[0] == "Ogden Nash"

    def test_new_instance_skipped(self, denormalizer, bulk, poetry):
        assert denormalizer.engine.recompute_via_bulk_path(poetry, bulk.store) == {}

    def test_nothing_stale_writes_nothing(self, denormalizer, session, bulk):
        tally = Tally(amount=2)
        session.add(tally)
        session.commit()
        assert denormalizer.engine.recompute_via_bulk_path(tally, bulk.store) == {}

    def test_serialized_value_encoded_once(self, denormalizer, session, bulk):
        article = Article(title="Gharsley Parsley parsley")
        session.add(article)
        session.commit()
        assert article.denormalized_keywords == ["gharsley", "parsley"]

        bulk.unset_for_instance(article, "denormalized_keywords")
        assert raw_row(session, "articles", article.id, "denormalized_keywords")[0] is None

        updates = denormalizer.engine.recompute_via_bulk_path(article, bulk.store)
        assert updates["denormalized_keywords"] == ["gharsley", "parsley"]

        stored = raw_row(session, "articles", article.id, "denormalized_keywords")[0]
        assert isinstance(stored, str)
        assert yaml.safe_load(stored) == ["gharsley", "parsley"]

        session.commit()
        session.refresh(article)
        assert article.denormalized_keywords == ["gharsley", "parsley"]

    def test_types_with_own_bind_processor(self, denormalizer, session, bulk):
        shelf = Shelf(label="poems essays", days=3)
        session.add(shelf)
        session.commit()

        bulk.unset_for_instance(shelf, ["denormalized_tags", "denormalized_wait"])
        updates = denormalizer.engine.recompute_via_bulk_path(shelf, bulk.store)
        assert updates["denormalized_tags"] == ["essays", "poems"]
        assert updates["denormalized_wait"] == timedelta(days=3)

        stored = raw_row(session, "shelves", shelf.id, "denormalized_tags")[0]
        assert pickle.loads(stored) == ["essays", "poems"]

        session.commit()
        session.refresh(shelf)
        assert shelf.denormalized_tags == ["essays", "poems"]
        assert shelf.denormalized_wait == timedelta(days=3)

    def test_recompute_everything(self, denormalizer, session, bulk, poetry):
        session.add(poetry)
        session.commit()
        updates = denormalizer.engine.recompute(poetry, bulk.store)
        assert set(updates) >= {"denormalized_user_name", "denormalized_identical_post_count"}
        assert poetry.denormalized_body_length == len(poetry.body)
