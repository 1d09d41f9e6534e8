"""
Unit tests for the Project context.

Tests cover:
- Shared storage and lock across components
- Schema saving with parent links
- Promotion validation
- Garbage collection of unreferenced snapshots
"""

import tempfile
from pathlib import Path

import pytest

from backend.schemavault import Project, SnapshotNotFoundError, VaultConfig
from backend.schemavault.audit import AuditLogger, FileAuditStorage
from backend.schemavault.config import AuditSettings
from backend.schemavault.locking import project_lock

V1 = {"User": {"table": "users", "fields": {"id": {"type": "uuid"}}}}
V2 = {"User": {"table": "users", "fields": {"id": {"type": "uuid"}, "email": {"type": "string"}}}}
V3 = {**V2, "Post": {"table": "posts"}}


class TestProject:
    """Tests for Project."""

    @pytest.fixture
    def root(self):
        """Create temporary project directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def project(self, root):
        return Project(root)

    def test_components_share_lock(self, root, project):
        """Every project handle on the same root shares one lock."""
        other = Project(root)

        assert project.lock is other.lock
        assert project.lock is project_lock(Path(root) / ".yama")

    def test_state_lives_under_state_dir(self, root, project):
        """State is written below <root>/.yama."""
        project.save_schema(V1, created_by="ci")

        assert (Path(root) / ".yama" / "snapshots" / "manifest.json").exists()

    def test_save_schema_parents_on_environment(self, project):
        """Snapshots saved for an environment link to its current snapshot."""
        first = project.save_schema(V1, created_by="ci")
        project.promote("production", first.hash)

        second = project.save_schema(V2, created_by="ci", environment="production")

        assert second.parent_hash == first.hash
        assert project.snapshots.get_lineage(second.hash) == [second.hash, first.hash]

    def test_promote_requires_existing_snapshot(self, project):
        """Promoting an unknown snapshot raises."""
        with pytest.raises(SnapshotNotFoundError):
            project.promote("production", "f" * 64)

        assert project.current_snapshot("production") is None

    def test_promote_by_prefix(self, project):
        """Promotion accepts a hash prefix."""
        snap = project.save_schema(V1, created_by="ci")

        state = project.promote("staging", snap.hash[:10])

        assert state.current_snapshot == snap.hash

    def test_collect_garbage_keeps_referenced(self, project):
        """Snapshots referenced by environments or versions survive GC."""
        s1 = project.save_schema(V1, created_by="ci")
        s2 = project.save_schema(V2, created_by="ci")
        s3 = project.save_schema(V3, created_by="ci")
        project.promote("production", s1.hash)
        project.versions.record_schema_version(V3)

        removed = project.collect_garbage()

        assert removed == [s2.hash]
        assert set(project.snapshots.get_all_snapshot_hashes()) == {s1.hash, s3.hash}

    def test_audit_logger_uses_environment_snapshot(self, root):
        """Audit loggers tag entries with the environment's snapshot."""
        config = VaultConfig(audit=AuditSettings(enabled=True, storage="file"))
        project = Project(root, config=config)
        snap = project.save_schema(V1, created_by="ci")
        project.promote("production", snap.hash)

        audit = project.audit_logger("production")

        assert isinstance(audit, AuditLogger)
        assert isinstance(audit.storage, FileAuditStorage)
        assert audit.snapshot_provider() == snap.hash
