"""
Work planning: which tracked tags still need to be migrated.
"""

from typing import Dict, List, NamedTuple, Tuple

from image_migrator.manifest import ManifestKind
from image_migrator.state_store import MigrationStateStore, MigrationStatus


class WorkItem(NamedTuple):
    repo: str
    tag: str
    platforms: Tuple[str, ...]
    kind: ManifestKind

    @property
    def multi_arch(self) -> bool:
        """Indexes are copied with every platform, even when members carry no platform field."""
        return self.kind is ManifestKind.MULTI_PLATFORM


def remaining_work(state: MigrationStateStore) -> List[WorkItem]:
    """Every tag that is not complete and has a migratable manifest, in state order.

    Tags that were never resolved (inspection failed) or whose manifest type is
    unrecognized are left out. Read-only.
    """
    items = []
    for repo, tag, entry in state.iter_tags():
        if entry.is_complete:
            continue
        if entry.kind in (ManifestKind.MULTI_PLATFORM, ManifestKind.SINGLE_PLATFORM):
            items.append(WorkItem(repo, tag, tuple(entry.platforms), entry.kind))
    return items


def status_counts(state: MigrationStateStore) -> Dict[str, int]:
    """Count tracked tags by migration status."""
    counts = {"complete": 0, "error": 0, "pending": 0, "unresolved": 0, "unrecognized": 0}
    for _, _, entry in state.iter_tags():
        if entry.status is MigrationStatus.COMPLETE:
            counts["complete"] += 1
        elif not entry.is_resolved:
            counts["unresolved"] += 1
        elif entry.kind is ManifestKind.UNRECOGNIZED:
            counts["unrecognized"] += 1
        elif entry.status is MigrationStatus.ERROR:
            counts["error"] += 1
        else:
            counts["pending"] += 1
    return counts
