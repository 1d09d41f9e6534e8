"""
Unit tests for the schema version ledger.

Tests cover:
- Patch-only version numbering
- Unchanged-schema rejection
- Changed-entity detection
- Version diffs and lookups
"""

import tempfile
import threading

import pytest

from backend.schemavault.storage import InMemoryStorage, LocalStorage
from backend.schemavault.versions import (
    SchemaUnchangedError,
    VersionLedger,
    detect_changed_entities,
    next_patch_version,
)

V1 = {"User": {"table": "users", "fields": {"id": {"type": "uuid"}}}}
V2 = {"User": {"table": "users", "fields": {"id": {"type": "uuid"}, "email": {"type": "string"}}}}
V3 = {**V2, "Post": {"table": "posts", "fields": {"id": {"type": "uuid"}}}}


class TestNextPatchVersion:
    """Tests for next_patch_version."""

    @pytest.mark.parametrize(
        "last,expected",
        [
            (None, "0.0.1"),
            ("0.0.1", "0.0.2"),
            ("1.4.9", "1.4.10"),
            ("1.2", "1.2.1"),
            ("1", "1.0.1"),
        ],
    )
    def test_bump(self, last, expected):
        """Only the patch segment is incremented."""
        assert next_patch_version(last) == expected


class TestDetectChangedEntities:
    """Tests for detect_changed_entities."""

    def test_added_and_modified(self):
        """Added and modified entities are both reported."""
        old = {"User": {"fields": {"id": {"type": "uuid"}}}}
        new = {
            "User": {"fields": {"id": {"type": "uuid"}, "email": {"type": "string"}}},
            "Post": {"fields": {}},
        }

        assert set(detect_changed_entities(old, new)) == {"User", "Post"}

    def test_removed(self):
        """Removed entities are reported."""
        assert detect_changed_entities(V3, V2) == ["Post"]

    def test_no_previous_schema(self):
        """Without a previous schema everything is new."""
        assert detect_changed_entities(None, V3) == ["User", "Post"]

    def test_key_order_only_is_not_a_change(self):
        """Reordered keys do not count as modification."""
        reordered = {"User": {"fields": {"id": {"type": "uuid"}}, "table": "users"}}

        assert detect_changed_entities(V1, reordered) == []


class TestVersionLedger:
    """Tests for VersionLedger."""

    @pytest.fixture
    def ledger(self):
        return VersionLedger(InMemoryStorage())

    def test_successive_versions(self, ledger):
        """Versions go 0.0.1, 0.0.2, 0.0.3."""
        versions = [ledger.record_schema_version(e).version for e in (V1, V2, V3)]

        assert versions == ["0.0.1", "0.0.2", "0.0.3"]

    def test_unchanged_schema_rejected(self, ledger):
        """Recording identical entities twice raises."""
        ledger.record_schema_version(V1)

        with pytest.raises(SchemaUnchangedError, match="Schema has not changed since last version"):
            ledger.record_schema_version(V1)

    def test_version_links_previous(self, ledger):
        """Each version links to the previous version and hash."""
        first = ledger.record_schema_version(V2)
        second = ledger.record_schema_version(V3, description="add posts")

        assert second.previous_version == first.version
        assert second.previous_hash == first.hash
        assert second.changed_entities == ("Post",)
        assert second.description == "add posts"

    def test_explicit_version(self, ledger):
        """Explicit version strings are used as given and bumped from."""
        ledger.record_schema_version(V1, version="1.2")
        record = ledger.record_schema_version(V2)

        assert record.version == "1.2.1"

    def test_duplicate_explicit_version_rejected(self, ledger):
        """An explicit version cannot be recorded twice."""
        ledger.record_schema_version(V1, version="1.0.0")

        with pytest.raises(ValueError, match="already recorded"):
            ledger.record_schema_version(V2, version="1.0.0")

    @pytest.mark.parametrize("version", ["../history", "a/b", "1..2", ".hidden", "v 1"])
    def test_invalid_explicit_version_rejected(self, version):
        """Version strings that are not safe archive keys are rejected."""
        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = VersionLedger(LocalStorage(tmpdir))
            first = ledger.record_schema_version(V1)

            with pytest.raises(ValueError, match="Invalid schema version"):
                ledger.record_schema_version(V2, version=version)

            history = ledger.load_history()
            assert history is not None
            assert [v.version for v in history.versions] == [first.version]

    def test_generated_version_skips_recorded(self, ledger):
        """Automatic numbering never reuses an explicitly recorded version."""
        ledger.record_schema_version(V1, version="0.0.3")
        ledger.record_schema_version(V2, version="0.0.2")

        record = ledger.record_schema_version(V3)

        assert record.version == "0.0.4"
        assert ledger.load_entity_snapshot("0.0.3") == V1

    def test_archive_per_version(self, ledger):
        """Entities are archived under the version string."""
        ledger.record_schema_version(V1)

        assert ledger.load_entity_snapshot("0.0.1") == V1
        assert ledger.load_entity_snapshot("9.9.9") is None

    def test_version_diff(self, ledger):
        """Diff reports added, removed and modified entities."""
        ledger.record_schema_version(V1)
        ledger.record_schema_version(V3)

        diff = ledger.get_version_diff("0.0.1", "0.0.2")

        assert diff.added_entities == ("Post",)
        assert diff.modified_entities == ("User",)
        assert diff.removed_entities == ()
        assert diff.has_changes
        assert ledger.get_version_diff("0.0.1", "4.0.0") is None

    def test_has_schema_changed(self, ledger):
        """Change detection compares against the current hash."""
        assert ledger.has_schema_changed(V1)

        ledger.record_schema_version(V1)

        assert not ledger.has_schema_changed(V1)
        assert ledger.has_schema_changed(V2)

    def test_lookups(self, ledger):
        """Current version/hash and per-version lookups."""
        assert ledger.get_current_schema_version() is None
        assert ledger.get_current_schema_hash() is None

        ledger.record_schema_version(V1)
        record = ledger.record_schema_version(V2)

        assert ledger.get_current_schema_version() == record
        assert ledger.get_current_schema_hash() == record.hash
        assert ledger.get_schema_version("0.0.1").hash == ledger.compute_schema_hash(V1)
        assert ledger.get_schema_version("7.7.7") is None
        assert [v.version for v in ledger.list_schema_versions()] == ["0.0.1", "0.0.2"]

    def test_concurrent_records_do_not_drop_versions(self):
        """Writers sharing the project lock never lose an update."""
        storage = InMemoryStorage()
        lock = threading.RLock()
        schemas = [{"Entity": {"n": i}} for i in range(20)]
        errors = []

        def record(entities):
            try:
                VersionLedger(storage, lock=lock).record_schema_version(entities)
            except SchemaUnchangedError as e:
                errors.append(e)

        threads = [threading.Thread(target=record, args=(s,)) for s in schemas]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        versions = VersionLedger(storage).list_schema_versions()
        assert not errors
        assert len(versions) == 20
        assert len({v.version for v in versions}) == 20
