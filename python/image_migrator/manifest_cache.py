"""
Manifest metadata cache backed by the migration state.

Registries meter manifest inspection, so the first successful inspection of a
(repository, tag) is persisted and every later lookup, in this run or any
later run using the same state file, is answered from the state.
"""

from image_migrator.error_utils import DiscoveryError, RegistryError, UnrecognizedManifestError
from image_migrator.logging_utils import get_logger
from image_migrator.manifest import ManifestKind, ManifestRecord, parse_manifest
from image_migrator.registry_client import RegistryClient, image_url
from image_migrator.state_store import MigrationStateStore

logger = get_logger(__name__)


class ManifestCache:
    def __init__(self, state: MigrationStateStore, client: RegistryClient, source_host: str):
        self.state = state
        self.client = client
        self.source_host = source_host

    def get_or_fetch(self, repo: str, tag: str) -> ManifestRecord:
        """Return the manifest record for a source tag, inspecting it only once.

        Raises:
            UnrecognizedManifestError: the media type cannot be migrated (cached too)
            DiscoveryError: inspection failed; nothing is cached so a later run retries
        """
        entry = self.state.get(repo, tag)
        if entry is not None and entry.is_resolved:
            record = entry.manifest
            logger.debug(f"Manifest cache hit for {repo}:{tag} ({record.media_type})")
            if not record.is_migratable:
                raise UnrecognizedManifestError(repo, tag, record.media_type)
            return record

        url = image_url(self.source_host, repo, tag)
        logger.info(f"Checking {url} for multi-arch references...")
        try:
            raw = self.client.inspect_manifest(self.source_host, repo, tag)
        except RegistryError as e:
            raise DiscoveryError(repo, "inspect", e, tag=tag) from e

        try:
            record = parse_manifest(raw)
        except ValueError as e:
            raise DiscoveryError(repo, "inspect", e, tag=tag) from e

        self.state.record_manifest(repo, tag, record)
        self.state.save()

        if record.kind is ManifestKind.MULTI_PLATFORM:
            logger.info(f"{url} has a multi-arch manifest for {', '.join(record.platforms) or 'no platforms'}")
        elif record.kind is ManifestKind.SINGLE_PLATFORM:
            logger.info(f"{url} has a simple manifest")
        else:
            logger.warning(f"Unrecognized manifest mediaType '{record.media_type}' for {url}... skipping")
            raise UnrecognizedManifestError(repo, tag, record.media_type)

        return record
