"""
Manifest classification.

Registry manifests come in three flavours as far as migration is concerned:
multi-platform indexes (copied with ``--multi-arch all``), single-platform
manifests (plain copy) and everything else, which cannot be migrated.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"

MULTI_PLATFORM_MEDIA_TYPES = frozenset({OCI_INDEX, DOCKER_MANIFEST_LIST})
SINGLE_PLATFORM_MEDIA_TYPES = frozenset({DOCKER_MANIFEST, OCI_MANIFEST})

# buildkit attaches provenance/SBOM manifests to an index with this annotation
REFERENCE_TYPE_ANNOTATION = "vnd.docker.reference.type"
ATTESTATION_REFERENCE_TYPE = "attestation-manifest"


class ManifestKind(Enum):
    MULTI_PLATFORM = "multi-platform"
    SINGLE_PLATFORM = "single-platform"
    UNRECOGNIZED = "unrecognized"


def classify_media_type(media_type: Optional[str]) -> ManifestKind:
    if media_type in MULTI_PLATFORM_MEDIA_TYPES:
        return ManifestKind.MULTI_PLATFORM
    if media_type in SINGLE_PLATFORM_MEDIA_TYPES:
        return ManifestKind.SINGLE_PLATFORM
    return ManifestKind.UNRECOGNIZED


@dataclass(frozen=True)
class ManifestRecord:
    """Cached metadata for one (repository, tag). Never overwritten once recorded."""

    media_type: str
    platforms: Tuple[str, ...] = field(default_factory=tuple)
    digest: Optional[str] = None

    @property
    def kind(self) -> ManifestKind:
        return classify_media_type(self.media_type)

    @property
    def is_migratable(self) -> bool:
        return self.kind is not ManifestKind.UNRECOGNIZED


def manifest_digest(raw: str) -> str:
    """Digest of a raw manifest, as the registry would compute it."""
    return "sha256:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


def platforms_from_index(document: Dict[str, Any]) -> List[str]:
    """List ``os/architecture`` for every runnable member of an index.

    Attestation manifests are skipped; duplicates (e.g. several arm variants)
    are reported once, in index order.
    """
    platforms = []
    for entry in document.get("manifests") or []:
        annotations = entry.get("annotations") or {}
        if annotations.get(REFERENCE_TYPE_ANNOTATION) == ATTESTATION_REFERENCE_TYPE:
            continue
        platform = entry.get("platform") or {}
        os_name = platform.get("os")
        architecture = platform.get("architecture")
        if not os_name or not architecture:
            continue
        name = f"{os_name}/{architecture}"
        if name not in platforms:
            platforms.append(name)
    return platforms


def parse_manifest(raw: str) -> ManifestRecord:
    """Build a ManifestRecord from the raw output of ``skopeo inspect --raw``.

    Unrecognized media types still produce a record (with no platforms) so the
    caller can cache the classification.

    Raises:
        ValueError: if the document is not a JSON object
    """
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"manifest is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise ValueError(f"manifest is a JSON {type(document).__name__}, expected an object")

    media_type = document.get("mediaType") or ""
    kind = classify_media_type(media_type)
    platforms: Tuple[str, ...] = ()
    if kind is ManifestKind.MULTI_PLATFORM:
        platforms = tuple(platforms_from_index(document))

    return ManifestRecord(media_type=media_type, platforms=platforms, digest=manifest_digest(raw))
