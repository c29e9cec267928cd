"""Unit tests for image_migrator/tag_discovery.py"""

import json

import pytest

from conftest import SOURCE_HOST, index_manifest, single_manifest


def _entry(repo="org/app", patterns=(".*",), target_repo=None):
    from image_migrator.config_manager import MigrationPlanEntry

    return MigrationPlanEntry(source_repo=repo, target_repo=target_repo, tag_patterns=tuple(patterns))


@pytest.fixture
def discoverer(state, fake_client):
    from image_migrator.manifest_cache import ManifestCache
    from image_migrator.tag_discovery import TagDiscoverer

    cache = ManifestCache(state, fake_client, SOURCE_HOST)
    return TagDiscoverer(state, fake_client, cache, SOURCE_HOST)


class TestDiscover:
    """Tests for TagDiscoverer.discover"""

    def test_registers_matching_tags_only(self, discoverer, state, fake_client):
        for tag in ("v1.0", "v1.1", "v2.0", "latest"):
            fake_client.add_image(SOURCE_HOST, "org/app", tag, single_manifest())

        result = discoverer.discover(_entry(patterns=[r"^v1\."]))

        assert result.selected == 2
        assert result.registered == 2
        assert result.resolved == 2
        assert sorted(tag for _, tag, _ in state.iter_tags()) == ["v1.0", "v1.1"]

    def test_patterns_are_alternatives(self, discoverer, state, fake_client):
        for tag in ("v1.0", "v2.0", "latest", "nightly"):
            fake_client.add_image(SOURCE_HOST, "org/app", tag, single_manifest())

        discoverer.discover(_entry(patterns=[r"^v1\.", "^latest$"]))

        assert sorted(tag for _, tag, _ in state.iter_tags()) == ["latest", "v1.0"]

    def test_no_matching_tags_still_tracks_repository(self, discoverer, state, fake_client):
        fake_client.add_image(SOURCE_HOST, "org/app", "latest", single_manifest())

        result = discoverer.discover(_entry(patterns=["^release-"]))

        assert result.selected == 0
        assert state.has_repository("org/app")
        assert len(state) == 0

    def test_second_run_is_idempotent(self, discoverer, state, fake_client):
        for tag in ("v1", "v2"):
            fake_client.add_image(SOURCE_HOST, "org/app", tag, index_manifest(["linux/amd64"]))

        discoverer.discover(_entry())
        before = state.to_dict()
        result = discoverer.discover(_entry())

        assert state.to_dict() == before
        assert result.registered == 0
        assert result.resolved == 2
        assert fake_client.inspect_count() == 2

    def test_discovery_is_persisted_before_returning(self, discoverer, state, fake_client):
        from image_migrator.state_store import MigrationStateStore

        fake_client.add_image(SOURCE_HOST, "org/app", "v1", single_manifest())

        discoverer.discover(_entry())

        reloaded = MigrationStateStore(state.path).load()
        assert reloaded.get("org/app", "v1").is_resolved

    def test_list_tags_failure_raises_discovery_error(self, discoverer, state, fake_client):
        from image_migrator.error_utils import DiscoveryError, RegistryUnavailableError

        fake_client.tags[(SOURCE_HOST, "org/app")] = RegistryUnavailableError("docker://source/org/app")

        with pytest.raises(DiscoveryError) as exc_info:
            discoverer.discover(_entry())

        assert exc_info.value.operation == "list-tags"
        assert state.has_repository("org/app")

    def test_per_tag_failures_do_not_stop_the_repository(self, discoverer, state, fake_client):
        from image_migrator.error_utils import RegistryUnavailableError

        fake_client.add_image(SOURCE_HOST, "org/app", "broken", single_manifest())
        fake_client.manifests[(SOURCE_HOST, "org/app", "broken")] = RegistryUnavailableError("ref")
        fake_client.add_image(
            SOURCE_HOST, "org/app", "ancient", json.dumps({"mediaType": "application/x-unknown"})
        )
        fake_client.add_image(SOURCE_HOST, "org/app", "good", single_manifest())

        result = discoverer.discover(_entry())

        assert result.failed == ["broken"]
        assert result.unrecognized == 1
        assert result.resolved == 1
        assert state.has_tag("org/app", "broken")
        assert not state.get("org/app", "broken").is_resolved

    def test_failed_tag_is_inspected_again_next_run(self, discoverer, state, fake_client):
        from image_migrator.error_utils import RateLimitedError

        fake_client.add_image(SOURCE_HOST, "org/app", "v1", single_manifest())
        fake_client.manifests[(SOURCE_HOST, "org/app", "v1")] = RateLimitedError("ref")
        discoverer.discover(_entry())

        fake_client.manifests[(SOURCE_HOST, "org/app", "v1")] = single_manifest()
        result = discoverer.discover(_entry())

        assert result.resolved == 1
        assert state.get("org/app", "v1").is_resolved


class TestDiscoverAll:
    """Tests for TagDiscoverer.discover_all"""

    def test_repository_failure_does_not_stop_others(self, discoverer, state, fake_client):
        fake_client.add_image(SOURCE_HOST, "org/good", "v1", single_manifest())

        results = discoverer.discover_all([_entry("org/missing"), _entry("org/good")])

        assert [r.repository for r in results] == ["org/missing", "org/good"]
        assert results[0].error is not None
        assert results[1].error is None
        assert state.has_tag("org/good", "v1")

    def test_follows_plan_order(self, discoverer, state, fake_client):
        fake_client.add_image(SOURCE_HOST, "org/zeta", "1", single_manifest())
        fake_client.add_image(SOURCE_HOST, "org/alpha", "1", single_manifest())

        discoverer.discover_all([_entry("org/zeta"), _entry("org/alpha")])

        assert state.repositories() == ["org/zeta", "org/alpha"]
