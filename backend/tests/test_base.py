"""Tests for the schema-aware table helpers."""

from sqlalchemy import Index

from steward.common.base import get_table_args, get_table_ref
from steward.common.config import settings


class TestTableHelpers:

    def test_sqlite_drops_schema(self, monkeypatch):
        monkeypatch.setattr(settings, "database_type", "sqlite")
        idx = Index("idx_x", "x")
        assert get_table_args(idx, schema="authority") == (idx,)
        assert get_table_ref("action_type", "authority") == "action_type"

    def test_postgresql_keeps_schema(self, monkeypatch):
        monkeypatch.setattr(settings, "database_type", "postgresql")
        idx = Index("idx_x", "x")
        assert get_table_args(idx, schema="authority") == (idx, {"schema": "authority"})
        assert get_table_ref("action_type", "authority") == "authority.action_type"
        assert get_table_ref("action_type") == "action_type"
