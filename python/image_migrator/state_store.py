"""
Durable migration state.

The state file is the resumability record of a migration: for every repository
and tag it remembers the manifest metadata discovered so far (so rate-limited
inspect calls are never repeated) and the migration status of the tag.

The whole document is held in memory by a single owner. ``save()`` writes it to
a temporary file next to the state file and atomically replaces the original,
so an interrupted run leaves either the previous or the new state on disk,
never a partial one.
"""

import json
import os
import stat
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from image_migrator.error_utils import StateCorruptionError
from image_migrator.logging_utils import get_logger
from image_migrator.manifest import ManifestKind, ManifestRecord, classify_media_type

logger = get_logger(__name__)

STATE_VERSION = 1

# Keys of a tag entry that TagState models explicitly
_KNOWN_TAG_KEYS = ("mediaType", "platforms", "digest", "status")


class MigrationStatus(Enum):
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class TagState:
    """State of one (repository, tag). ``status`` None means not yet attempted."""

    media_type: Optional[str] = None
    platforms: List[str] = field(default_factory=list)
    digest: Optional[str] = None
    status: Optional[MigrationStatus] = None
    extra: Dict[str, Any] = field(default_factory=dict)  # unknown keys, kept for round-trips

    @property
    def is_resolved(self) -> bool:
        """True once a manifest classification has been cached (even an unrecognized one)."""
        return self.media_type is not None

    @property
    def kind(self) -> Optional[ManifestKind]:
        if not self.is_resolved:
            return None
        return classify_media_type(self.media_type)

    @property
    def manifest(self) -> Optional[ManifestRecord]:
        if not self.is_resolved:
            return None
        return ManifestRecord(media_type=self.media_type, platforms=tuple(self.platforms), digest=self.digest)

    @property
    def is_complete(self) -> bool:
        return self.status is MigrationStatus.COMPLETE

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        if self.media_type is not None:
            data["mediaType"] = self.media_type
            data["platforms"] = list(self.platforms)
        if self.digest is not None:
            data["digest"] = self.digest
        if self.status is not None:
            data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TagState":
        """Build from a state-file entry.

        Raises:
            ValueError: if a field has the wrong shape
        """
        if not isinstance(data, dict):
            raise ValueError(f"tag entry must be an object, got {type(data).__name__}")

        media_type = data.get("mediaType")
        if media_type is not None and not isinstance(media_type, str):
            raise ValueError(f"mediaType must be a string, got {media_type!r}")

        platforms = data.get("platforms") or []
        if not isinstance(platforms, list) or not all(isinstance(p, str) for p in platforms):
            raise ValueError(f"platforms must be a list of strings, got {platforms!r}")

        status = None
        raw_status = data.get("status")
        if raw_status is not None:
            try:
                status = MigrationStatus(raw_status)
            except ValueError:
                raise ValueError(f"unknown status {raw_status!r}")

        return cls(
            media_type=media_type,
            platforms=list(platforms),
            digest=data.get("digest"),
            status=status,
            extra={k: v for k, v in data.items() if k not in _KNOWN_TAG_KEYS},
        )


class MigrationStateStore:
    """Owns the in-memory migration state and its persisted copy."""

    def __init__(self, path):
        self.path = Path(path)
        self._repos: Dict[str, Dict[str, TagState]] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> "MigrationStateStore":
        """Load the state file, or start empty when it does not exist yet.

        Raises:
            StateCorruptionError: if the file exists but cannot be understood
        """
        if not self.path.exists():
            logger.info(f"No state file at {self.path}, starting a new migration")
            self._repos = {}
            return self

        try:
            with open(self.path, "r") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise StateCorruptionError(str(self.path), f"invalid JSON ({e})")
        except OSError as e:
            raise StateCorruptionError(str(self.path), f"cannot be read ({e})")

        self._repos = self._parse(document)
        logger.info(
            f"Loaded state for {len(self._repos)} repositories "
            f"({sum(len(tags) for tags in self._repos.values())} tags) from {self.path}"
        )
        return self

    def _parse(self, document: Any) -> Dict[str, Dict[str, TagState]]:
        if not isinstance(document, dict):
            raise StateCorruptionError(str(self.path), "top level must be a JSON object")

        version = document.get("version", STATE_VERSION)
        if not isinstance(version, int) or version > STATE_VERSION:
            raise StateCorruptionError(
                str(self.path), f"unsupported state version {version!r} (this tool writes {STATE_VERSION})"
            )

        repos = document.get("repos")
        if not isinstance(repos, dict):
            raise StateCorruptionError(str(self.path), "missing 'repos' object")

        parsed = {}
        for repo, tags in repos.items():
            if not isinstance(tags, dict):
                raise StateCorruptionError(str(self.path), f"repository {repo!r} must map tags to objects")
            parsed[repo] = {}
            for tag, entry in tags.items():
                try:
                    parsed[repo][tag] = TagState.from_dict(entry)
                except ValueError as e:
                    raise StateCorruptionError(str(self.path), f"{repo}:{tag}: {e}")
        return parsed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "repos": {repo: {tag: entry.to_dict() for tag, entry in tags.items()} for repo, tags in self._repos.items()},
        }

    def save(self) -> None:
        """Persist the full state atomically (temp file + rename)."""
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)

        mode = self._file_mode()
        fd, temp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(directory))
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            # mkstemp creates 0600; keep the mode the state file already had
            os.chmod(temp_path, mode)
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        self._fsync_directory(directory)
        logger.debug(f"State saved: {self.path}")

    def _file_mode(self) -> int:
        """Permission bits for the saved file: the existing file's, else the umask default."""
        try:
            return stat.S_IMODE(os.stat(self.path).st_mode)
        except FileNotFoundError:
            umask = os.umask(0)
            os.umask(umask)
            return 0o666 & ~umask

    @staticmethod
    def _fsync_directory(directory: Path) -> None:
        """Make the rename itself durable."""
        if os.name != "posix":
            return
        fd = os.open(str(directory), os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def repositories(self) -> List[str]:
        return list(self._repos)

    def has_repository(self, repo: str) -> bool:
        return repo in self._repos

    def has_tag(self, repo: str, tag: str) -> bool:
        return tag in self._repos.get(repo, {})

    def get(self, repo: str, tag: str) -> Optional[TagState]:
        return self._repos.get(repo, {}).get(tag)

    def iter_tags(self) -> Iterator[Tuple[str, str, TagState]]:
        """Yield (repo, tag, state) in insertion order."""
        for repo, tags in self._repos.items():
            for tag, entry in tags.items():
                yield repo, tag, entry

    def __len__(self) -> int:
        return sum(len(tags) for tags in self._repos.values())

    # ------------------------------------------------------------------
    # Mutations (in memory; callers decide when to save)
    # ------------------------------------------------------------------

    def ensure_repository(self, repo: str) -> bool:
        """Start tracking a repository. Returns True if it was new."""
        if repo in self._repos:
            return False
        self._repos[repo] = {}
        return True

    def register_tag(self, repo: str, tag: str) -> bool:
        """Track a tag with an empty record. Returns True if it was new."""
        self.ensure_repository(repo)
        if tag in self._repos[repo]:
            return False
        self._repos[repo][tag] = TagState()
        return True

    def record_manifest(self, repo: str, tag: str, record: ManifestRecord) -> bool:
        """Cache manifest metadata unless some is already recorded.

        Returns:
            True if the record was written, False if an earlier one was kept
        """
        self.register_tag(repo, tag)
        entry = self._repos[repo][tag]
        if entry.is_resolved:
            return False
        entry.media_type = record.media_type
        entry.platforms = list(record.platforms)
        entry.digest = record.digest
        return True

    def set_status(self, repo: str, tag: str, status: MigrationStatus) -> None:
        """Record a migration outcome. ``complete`` is terminal.

        Raises:
            KeyError: if the tag is not tracked
            ValueError: on an attempt to leave the ``complete`` state
        """
        entry = self._repos[repo][tag]
        if entry.is_complete and status is not MigrationStatus.COMPLETE:
            raise ValueError(f"{repo}:{tag} is already complete, refusing to mark it {status.value}")
        entry.status = status
