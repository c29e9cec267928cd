"""
Tag discovery: expand migration plan entries into tracked (repository, tag) pairs.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from image_migrator.config_manager import MigrationPlanEntry
from image_migrator.error_utils import DiscoveryError, RegistryError, UnrecognizedManifestError
from image_migrator.logging_utils import get_logger, log_item_failure
from image_migrator.manifest_cache import ManifestCache
from image_migrator.registry_client import RegistryClient, image_url
from image_migrator.state_store import MigrationStateStore

logger = get_logger(__name__)


@dataclass
class DiscoveryResult:
    """What discovery found for one plan entry."""

    repository: str
    selected: int = 0
    registered: int = 0
    resolved: int = 0
    unrecognized: int = 0
    failed: List[str] = field(default_factory=list)
    error: Optional[DiscoveryError] = None


class TagDiscoverer:
    """Lists source tags, filters them by the plan's patterns and caches their manifests."""

    def __init__(
        self,
        state: MigrationStateStore,
        client: RegistryClient,
        manifest_cache: ManifestCache,
        source_host: str,
    ):
        self.state = state
        self.client = client
        self.manifest_cache = manifest_cache
        self.source_host = source_host

    def discover(self, entry: MigrationPlanEntry) -> DiscoveryResult:
        """Register every matching tag of one plan entry and resolve its manifest.

        Raises:
            DiscoveryError: if the repository's tags cannot be listed
        """
        repo = entry.source_repo
        result = DiscoveryResult(repository=repo)

        if self.state.ensure_repository(repo):
            self.state.save()

        url = image_url(self.source_host, repo)
        logger.info(f"Querying {url} for tags matching filters {list(entry.tag_patterns)}...")
        try:
            tags = self.client.list_tags(self.source_host, repo)
        except RegistryError as e:
            raise DiscoveryError(repo, "list-tags", e) from e

        selected = [tag for tag in tags if entry.matches(tag)]
        result.selected = len(selected)
        logger.info(f"  {len(selected)} of {len(tags)} tags in {repo} match")

        for tag in selected:
            if self.state.register_tag(repo, tag):
                self.state.save()
                result.registered += 1

            try:
                self.manifest_cache.get_or_fetch(repo, tag)
                result.resolved += 1
            except UnrecognizedManifestError:
                result.unrecognized += 1
            except DiscoveryError as e:
                log_item_failure(logger, repo, tag, "inspect", e)
                result.failed.append(tag)

        return result

    def discover_all(self, plan: List[MigrationPlanEntry]) -> List[DiscoveryResult]:
        """Run discovery for every plan entry; one entry's failure never stops the others."""
        results = []
        for entry in plan:
            try:
                results.append(self.discover(entry))
            except DiscoveryError as e:
                log_item_failure(logger, entry.source_repo, None, e.operation, e)
                results.append(DiscoveryResult(repository=entry.source_repo, error=e))
        return results
