"""Unit tests for image_migrator/state_store.py"""

import json
import os
from unittest.mock import patch

import pytest


def _record(media_type="application/vnd.oci.image.index.v1+json", platforms=("linux/amd64",), digest="sha256:1"):
    from image_migrator.manifest import ManifestRecord

    return ManifestRecord(media_type=media_type, platforms=platforms, digest=digest)


class TestLoad:
    """Tests for MigrationStateStore.load"""

    def test_missing_file_starts_empty(self, tmp_path):
        from image_migrator.state_store import MigrationStateStore

        store = MigrationStateStore(tmp_path / "state.json").load()

        assert len(store) == 0
        assert store.repositories() == []
        assert not (tmp_path / "state.json").exists()

    def test_file_without_version_is_accepted(self, tmp_path):
        from image_migrator.state_store import MigrationStateStore, MigrationStatus

        path = tmp_path / "state.json"
        path.write_text(
            json.dumps(
                {
                    "repos": {
                        "org/app": {
                            "v1": {
                                "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
                                "platforms": [],
                                "status": "complete",
                            },
                            "v2": {},
                        }
                    }
                }
            )
        )

        store = MigrationStateStore(path).load()

        assert store.get("org/app", "v1").status is MigrationStatus.COMPLETE
        assert store.get("org/app", "v2").is_resolved is False
        assert len(store) == 2

    def test_invalid_json_raises_state_corruption(self, tmp_path):
        from image_migrator.error_utils import StateCorruptionError
        from image_migrator.state_store import MigrationStateStore

        path = tmp_path / "state.json"
        path.write_text('{"repos": {')

        with pytest.raises(StateCorruptionError) as exc_info:
            MigrationStateStore(path).load()

        assert exc_info.value.path == str(path)
        assert "invalid JSON" in exc_info.value.reason
        # Never reset silently
        assert path.read_text() == '{"repos": {'

    @pytest.mark.parametrize(
        "document, reason",
        [
            ([], "top level"),
            ({"version": 1}, "missing 'repos'"),
            ({"version": 2, "repos": {}}, "unsupported state version"),
            ({"repos": {"org/app": []}}, "must map tags"),
            ({"repos": {"org/app": {"v1": {"status": "done"}}}}, "unknown status"),
            ({"repos": {"org/app": {"v1": {"platforms": "linux/amd64"}}}}, "platforms"),
        ],
    )
    def test_malformed_documents(self, tmp_path, document, reason):
        from image_migrator.error_utils import StateCorruptionError
        from image_migrator.state_store import MigrationStateStore

        path = tmp_path / "state.json"
        path.write_text(json.dumps(document))

        with pytest.raises(StateCorruptionError) as exc_info:
            MigrationStateStore(path).load()

        assert reason in exc_info.value.reason

    def test_unknown_keys_are_preserved(self, tmp_path):
        from image_migrator.state_store import MigrationStateStore

        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 1, "repos": {"org/app": {"v1": {"note": "kept", "status": "error"}}}}))

        store = MigrationStateStore(path).load()
        store.save()

        saved = json.loads(path.read_text())
        assert saved["repos"]["org/app"]["v1"] == {"note": "kept", "status": "error"}


class TestSave:
    """Tests for MigrationStateStore.save"""

    def test_round_trip(self, tmp_path):
        from image_migrator.state_store import MigrationStateStore, MigrationStatus

        path = tmp_path / "state.json"
        store = MigrationStateStore(path).load()
        store.register_tag("org/app", "v1")
        store.record_manifest("org/app", "v1", _record(platforms=("linux/amd64", "linux/arm64")))
        store.set_status("org/app", "v1", MigrationStatus.COMPLETE)
        store.register_tag("org/app", "v2")
        store.save()

        saved = json.loads(path.read_text())
        assert saved == {
            "version": 1,
            "repos": {
                "org/app": {
                    "v1": {
                        "mediaType": "application/vnd.oci.image.index.v1+json",
                        "platforms": ["linux/amd64", "linux/arm64"],
                        "digest": "sha256:1",
                        "status": "complete",
                    },
                    "v2": {},
                }
            },
        }

        reloaded = MigrationStateStore(path).load()
        assert reloaded.to_dict() == store.to_dict()

    def test_creates_parent_directory(self, tmp_path):
        from image_migrator.state_store import MigrationStateStore

        path = tmp_path / "nested" / "dir" / "state.json"
        store = MigrationStateStore(path).load()
        store.ensure_repository("org/app")
        store.save()

        assert path.exists()

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
    def test_save_keeps_file_mode(self, tmp_path):
        import stat

        from image_migrator.state_store import MigrationStateStore

        path = tmp_path / "state.json"
        store = MigrationStateStore(path).load()
        store.ensure_repository("org/app")
        store.save()
        os.chmod(path, 0o640)

        store.register_tag("org/app", "v1")
        store.save()

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o640

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
    def test_new_file_follows_umask(self, tmp_path):
        import stat

        from image_migrator.state_store import MigrationStateStore

        path = tmp_path / "state.json"
        old_umask = os.umask(0o022)
        try:
            MigrationStateStore(path).load().save()
        finally:
            os.umask(old_umask)

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o644

    @pytest.mark.skipif(os.name != "posix", reason="directory fsync is POSIX only")
    def test_save_syncs_directory(self, tmp_path):
        from image_migrator.state_store import MigrationStateStore

        store = MigrationStateStore(tmp_path / "state.json").load()
        with patch("image_migrator.state_store.os.fsync") as fsync:
            store.save()

        # once for the temp file, once for the directory
        assert fsync.call_count == 2

    def test_failed_write_keeps_previous_state(self, tmp_path):
        """An interrupted save leaves the previous file in place and no temp file behind"""
        from image_migrator.state_store import MigrationStateStore

        path = tmp_path / "state.json"
        store = MigrationStateStore(path).load()
        store.ensure_repository("org/app")
        store.save()
        before = path.read_text()

        store.register_tag("org/app", "v1")
        with patch("image_migrator.state_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.save()

        assert path.read_text() == before
        assert os.listdir(tmp_path) == ["state.json"]

    def test_failing_serializer_keeps_previous_state(self, tmp_path):
        from image_migrator.state_store import MigrationStateStore

        path = tmp_path / "state.json"
        store = MigrationStateStore(path).load()
        store.ensure_repository("org/app")
        store.save()
        before = path.read_text()

        with patch("image_migrator.state_store.json.dump", side_effect=TypeError("not serializable")):
            with pytest.raises(TypeError):
                store.save()

        assert path.read_text() == before
        assert os.listdir(tmp_path) == ["state.json"]


class TestMutations:
    """Tests for register/record/status mutations"""

    def test_ensure_repository_reports_new(self, state):
        assert state.ensure_repository("org/app") is True
        assert state.ensure_repository("org/app") is False
        assert state.has_repository("org/app")

    def test_register_tag_is_idempotent(self, state):
        assert state.register_tag("org/app", "v1") is True
        assert state.register_tag("org/app", "v1") is False
        assert state.has_tag("org/app", "v1")
        assert len(state) == 1

    def test_record_manifest_never_overwrites(self, state):
        state.register_tag("org/app", "v1")

        assert state.record_manifest("org/app", "v1", _record(digest="sha256:first")) is True
        assert state.record_manifest("org/app", "v1", _record(digest="sha256:second")) is False

        assert state.get("org/app", "v1").digest == "sha256:first"

    def test_record_manifest_keeps_status(self, state):
        from image_migrator.state_store import MigrationStatus

        state.register_tag("org/app", "v1")
        state.set_status("org/app", "v1", MigrationStatus.ERROR)
        state.record_manifest("org/app", "v1", _record())

        assert state.get("org/app", "v1").status is MigrationStatus.ERROR

    def test_error_can_become_complete(self, state):
        from image_migrator.state_store import MigrationStatus

        state.register_tag("org/app", "v1")
        state.set_status("org/app", "v1", MigrationStatus.ERROR)
        state.set_status("org/app", "v1", MigrationStatus.COMPLETE)

        assert state.get("org/app", "v1").is_complete

    def test_complete_is_terminal(self, state):
        from image_migrator.state_store import MigrationStatus

        state.register_tag("org/app", "v1")
        state.set_status("org/app", "v1", MigrationStatus.COMPLETE)

        with pytest.raises(ValueError, match="already complete"):
            state.set_status("org/app", "v1", MigrationStatus.ERROR)
        state.set_status("org/app", "v1", MigrationStatus.COMPLETE)

    def test_set_status_on_untracked_tag(self, state):
        from image_migrator.state_store import MigrationStatus

        with pytest.raises(KeyError):
            state.set_status("org/app", "v1", MigrationStatus.COMPLETE)

    def test_iter_tags_in_insertion_order(self, state):
        state.register_tag("org/b", "2")
        state.register_tag("org/a", "1")
        state.register_tag("org/b", "1")

        assert [(repo, tag) for repo, tag, _ in state.iter_tags()] == [("org/b", "2"), ("org/b", "1"), ("org/a", "1")]


class TestTagState:
    """Tests for TagState"""

    def test_unresolved_has_no_kind(self):
        from image_migrator.state_store import TagState

        entry = TagState()

        assert entry.kind is None
        assert entry.manifest is None
        assert entry.to_dict() == {}

    def test_from_dict_rejects_non_object(self):
        from image_migrator.state_store import TagState

        with pytest.raises(ValueError):
            TagState.from_dict("complete")
