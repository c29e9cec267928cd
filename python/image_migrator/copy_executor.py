"""
Copy executor: migrate planned work items one at a time and record the outcome.
"""

from typing import Dict, List

from image_migrator.error_utils import CopyError, ManifestNotFoundError, RateLimitedError, RegistryError
from image_migrator.logging_utils import get_logger, log_item_failure
from image_migrator.manifest import manifest_digest
from image_migrator.registry_client import MultiArch, RegistryClient, image_url
from image_migrator.state_store import MigrationStateStore, MigrationStatus
from image_migrator.work_planner import WorkItem

logger = get_logger(__name__)


class CopyExecutor:
    """Processes work items sequentially; registries are never hit in parallel."""

    def __init__(self, config_manager, state: MigrationStateStore, client: RegistryClient):
        self.config_manager = config_manager
        self.state = state
        self.client = client
        self.source_host = config_manager.get_source_host()
        self.target_host = config_manager.get_target_host()
        self.verify_target_digest = config_manager.get_verify_target_digest()
        self.abort_on_rate_limit = config_manager.get_on_rate_limit() == "abort"

    def source_url(self, item: WorkItem) -> str:
        return image_url(self.source_host, item.repo, item.tag)

    def target_url(self, item: WorkItem) -> str:
        return image_url(self.target_host, self.config_manager.get_target_repo(item.repo), item.tag)

    def execute(self, items: List[WorkItem], dry_run: bool = False) -> Dict[str, int]:
        """Migrate every item. A failed item is recorded and never stops the batch.

        Args:
            items: Work items from the planner
            dry_run: If True, only log the copies that would happen; state is not touched

        Returns:
            Dict with counts: {"copied", "already_present", "failed", "would_copy"}

        Raises:
            RateLimitedError: when a copy stays throttled and on_rate_limit is "abort"
        """
        results = {"copied": 0, "already_present": 0, "failed": 0, "would_copy": 0}

        for i, item in enumerate(items, 1):
            logger.debug(f"[{i}/{len(items)}] {item.repo}:{item.tag}")
            outcome = self.process_item(item, dry_run=dry_run)
            results[outcome] += 1

        return results

    def process_item(self, item: WorkItem, dry_run: bool = False) -> str:
        """Migrate one item and return the name of its outcome counter."""
        source = self.source_url(item)
        target = self.target_url(item)

        if self._target_exists(item, target):
            logger.info(f"{target} already exists, marking {item.repo}:{item.tag} complete")
            self._record(item, MigrationStatus.COMPLETE, dry_run)
            return "already_present"

        platforms = f" for all platforms [{','.join(item.platforms) or 'unspecified'}]" if item.multi_arch else ""
        if dry_run:
            logger.info(f"[DRY RUN] Copying {source} to {target}{platforms}")
            return "would_copy"

        logger.info(f"Copying {source} to {target}{platforms}")
        try:
            copied = self.client.copy_image(
                source,
                target,
                preserve_digests=True,
                multi_arch=MultiArch.ALL if item.multi_arch else MultiArch.NONE,
            )
        except RegistryError as e:
            error = CopyError(source, target, e)
            log_item_failure(logger, item.repo, item.tag, "copy", error)
            self._record(item, MigrationStatus.ERROR, dry_run)
            if isinstance(e, RateLimitedError) and self.abort_on_rate_limit:
                logger.error("Copy is still rate limited after retries, stopping (migration.on_rate_limit=abort)")
                raise
            return "failed"

        if not copied:
            error = CopyError(source, target, RuntimeError("registry client reported the copy as unsuccessful"))
            log_item_failure(logger, item.repo, item.tag, "copy", error)
            self._record(item, MigrationStatus.ERROR, dry_run)
            return "failed"

        self._record(item, MigrationStatus.COMPLETE, dry_run)
        return "copied"

    def _target_exists(self, item: WorkItem, target: str) -> bool:
        """Whether the target already holds a manifest at the tag.

        Existence alone counts as migrated; the content is not compared with the
        source unless migration.verify_target_digest is enabled.
        """
        try:
            raw = self.client.inspect_manifest(
                self.target_host, self.config_manager.get_target_repo(item.repo), item.tag
            )
        except ManifestNotFoundError:
            return False
        except RegistryError as e:
            logger.warning(f"Could not inspect {target} ({e.message}), attempting the copy")
            return False

        if not self.verify_target_digest:
            return True

        entry = self.state.get(item.repo, item.tag)
        expected = entry.digest if entry else None
        if expected is None:
            logger.debug(f"No cached source digest for {item.repo}:{item.tag}, accepting existing target")
            return True
        actual = manifest_digest(raw)
        if actual != expected:
            logger.warning(f"{target} exists with digest {actual}, source has {expected}; copying again")
            return False
        return True

    def _record(self, item: WorkItem, status: MigrationStatus, dry_run: bool) -> None:
        if dry_run:
            return
        self.state.set_status(item.repo, item.tag, status)
        self.state.save()
