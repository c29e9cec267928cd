"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides an in-memory registry client plus configuration helpers.
"""
import json
import sys
from pathlib import Path

import pytest
import yaml

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

from image_migrator.error_utils import ManifestNotFoundError, RegistryUnavailableError  # noqa: E402
from image_migrator.registry_client import MultiArch, RegistryClient, image_url  # noqa: E402

SOURCE_HOST = "source.example.com"
TARGET_HOST = "target.example.com:5000"


def index_manifest(platforms, with_attestation=True):
    """Raw multi-platform OCI index for the given os/arch strings."""
    manifests = []
    for i, platform in enumerate(platforms):
        os_name, arch = platform.split("/")
        manifests.append(
            {
                "mediaType": "application/vnd.oci.image.manifest.v1+json",
                "digest": f"sha256:{i:064x}",
                "size": 1000,
                "platform": {"os": os_name, "architecture": arch},
            }
        )
    if with_attestation:
        manifests.append(
            {
                "mediaType": "application/vnd.oci.image.manifest.v1+json",
                "digest": "sha256:" + "f" * 64,
                "size": 800,
                "annotations": {
                    "vnd.docker.reference.digest": "sha256:" + "0" * 64,
                    "vnd.docker.reference.type": "attestation-manifest",
                },
                "platform": {"os": "unknown", "architecture": "unknown"},
            }
        )
    return json.dumps(
        {"schemaVersion": 2, "mediaType": "application/vnd.oci.image.index.v1+json", "manifests": manifests}
    )


def single_manifest():
    return json.dumps(
        {
            "schemaVersion": 2,
            "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
            "config": {"mediaType": "application/vnd.docker.container.image.v1+json", "digest": "sha256:" + "a" * 64},
            "layers": [],
        }
    )


class FakeRegistryClient(RegistryClient):
    """In-memory registry pair recording every call."""

    def __init__(self):
        self.tags = {}  # (host, repo) -> [tags] or Exception
        self.manifests = {}  # (host, repo, tag) -> raw str or Exception
        self.copy_failures = {}  # dest_ref -> Exception
        self.list_calls = []
        self.inspect_calls = []
        self.copy_calls = []

    def add_image(self, host, repo, tag, raw):
        existing = self.tags.setdefault((host, repo), [])
        if tag not in existing:
            existing.append(tag)
        self.manifests[(host, repo, tag)] = raw

    def list_tags(self, host, repository):
        self.list_calls.append((host, repository))
        tags = self.tags.get((host, repository))
        if isinstance(tags, Exception):
            raise tags
        if tags is None:
            raise ManifestNotFoundError(image_url(host, repository))
        return list(tags)

    def inspect_manifest(self, host, repository, tag):
        self.inspect_calls.append((host, repository, tag))
        raw = self.manifests.get((host, repository, tag))
        if isinstance(raw, Exception):
            raise raw
        if raw is None:
            raise ManifestNotFoundError(image_url(host, repository, tag))
        return raw

    def copy_image(self, src_ref, dest_ref, preserve_digests=True, multi_arch=MultiArch.NONE):
        self.copy_calls.append((src_ref, dest_ref, preserve_digests, multi_arch))
        failure = self.copy_failures.get(dest_ref)
        if failure is not None:
            raise failure
        # Mirror the image into the target so later inspections find it
        src = src_ref[len("docker://"):]
        dest = dest_ref[len("docker://"):]
        src_host, src_path = src.split("/", 1)
        dest_host, dest_path = dest.split("/", 1)
        src_repo, src_tag = src_path.rsplit(":", 1)
        dest_repo, dest_tag = dest_path.rsplit(":", 1)
        raw = self.manifests.get((src_host, src_repo, src_tag))
        if raw is None or isinstance(raw, Exception):
            raise RegistryUnavailableError(src_ref, stderr="reading manifest: manifest unknown")
        self.add_image(dest_host, dest_repo, dest_tag, raw)
        return True

    def inspect_count(self, host=SOURCE_HOST):
        return sum(1 for call in self.inspect_calls if call[0] == host)


@pytest.fixture
def fake_client():
    return FakeRegistryClient()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host environment overrides out of the tests"""
    for name in ("SOURCE_REGISTRY_HOST", "TARGET_REGISTRY_HOST", "MIGRATION_STATE_FILE", "REGISTRY_AUTH_FILE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_config(tmp_path):
    """Write a configuration file and return its path"""

    def _write(plan=None, **overrides):
        config = {
            "container_registries": {
                "source": {"host": SOURCE_HOST},
                "target": {"host": TARGET_HOST},
            },
            "container_engine_auth_file": str(tmp_path / "auth.json"),
            "migration_plan": plan if plan is not None else {"org/app": {}},
            "retry": {"max_retries": 0, "initial_delay": 0.0, "max_delay": 0.0, "jitter": False},
            "skopeo": {"rate_limit": {"enabled": False}},
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(config.get(key), dict):
                config[key] = {**config[key], **value}
            else:
                config[key] = value
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(config, sort_keys=False))
        return str(path)

    return _write


@pytest.fixture
def make_config(write_config):
    """Build a ConfigManager from plan/overrides"""
    from image_migrator.config_manager import ConfigManager

    def _make(plan=None, **overrides):
        return ConfigManager(write_config(plan, **overrides))

    return _make


@pytest.fixture
def state(tmp_path):
    from image_migrator.state_store import MigrationStateStore

    return MigrationStateStore(tmp_path / "config.yaml.state").load()
