"""Integration tests for single-resource CRUD."""

from __future__ import annotations

import pytest

from doof_admin.db import connection_scope
from doof_admin.resource_crud import (
    create_resource,
    delete_resource,
    find_resource_by_id,
    update_resource,
)
from doof_admin.shared import NoValidColumns, PersistenceConflict


class TestResourceCrud:
    def test_create_find_update_delete(self, db_pool, seed):
        city_id = seed.city("New York")
        with connection_scope(db_pool) as scope:
            row = create_resource(scope, "restaurants", {"name": "Joe's Pizza", "city_id": city_id, "id": 500})
            assert row["id"] != 500
            assert find_resource_by_id(scope, "restaurants", row["id"])["name"] == "Joe's Pizza"

            updated = update_resource(scope, "restaurants", row["id"], {"phone": "(212) 555-1234"})
            assert updated["phone"] == "(212) 555-1234"
            assert updated["updated_at"] >= row["updated_at"]

            deleted = delete_resource(scope, "restaurants", row["id"])
            assert deleted["id"] == row["id"]
            assert find_resource_by_id(scope, "restaurants", row["id"]) is None
            scope.commit()

    def test_update_without_valid_fields_is_noop(self, db_pool, seed):
        hashtag_id = seed.hashtag("vegan", "diet")
        before = seed.scalar("SELECT updated_at FROM hashtags WHERE id = %s", (hashtag_id,))
        with connection_scope(db_pool) as scope:
            row = update_resource(scope, "hashtags", hashtag_id, {"bogus": "x", "id": 9})
            scope.commit()
        assert row["name"] == "vegan"
        assert seed.scalar("SELECT updated_at FROM hashtags WHERE id = %s", (hashtag_id,)) == before

    def test_update_missing_row(self, db_pool, seed):
        with connection_scope(db_pool) as scope:
            assert update_resource(scope, "hashtags", 999, {"name": "x"}) is None

    def test_no_valid_columns(self, db_pool):
        with connection_scope(db_pool) as scope:
            with pytest.raises(NoValidColumns):
                create_resource(scope, "hashtags", {"bogus": 1})

    def test_unique_conflict_names_field(self, db_pool, seed):
        seed.hashtag("vegan")
        with connection_scope(db_pool) as scope:
            with pytest.raises(PersistenceConflict) as exc_info:
                create_resource(scope, "hashtags", {"name": "vegan"})
        assert exc_info.value.field == "name"
        assert "already exists" in str(exc_info.value)

    def test_foreign_key_conflict(self, db_pool, seed):
        with connection_scope(db_pool) as scope:
            with pytest.raises(PersistenceConflict, match="Invalid reference: city_id does not exist"):
                create_resource(scope, "restaurants", {"name": "Joe's", "city_id": 999})

    def test_users_password_never_updated(self, db_pool, seed):
        user_id = seed.user("joe", "joe@example.com")
        with connection_scope(db_pool) as scope:
            update_resource(scope, "users", user_id, {"password_hash": "changed"})
            scope.commit()
        assert seed.scalar("SELECT password_hash FROM users WHERE id = %s", (user_id,)) == "x"
