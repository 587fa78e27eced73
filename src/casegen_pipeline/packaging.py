from __future__ import annotations

import logging

from .canonical import sha256_hex, to_canonical_bytes
from .gating import classify_visibility
from .models import Manifest, ManifestEntry, NormalizedItem, RefinementSummary, ValidatedBundle
from .state_store import CaseStateStore, storage_name

logger = logging.getLogger(__name__)

MANIFEST_PATH = "manifest.json"
BUNDLE_PATH = "bundle.json"


def _item_path(item: NormalizedItem) -> str:
    folder = "documents" if item.kind == "document" else "media"
    return f"{folder}/{storage_name(item.id)}.json"


def package_bundle(
    store: CaseStateStore,
    final: ValidatedBundle,
    case_id: str,
    refinement: RefinementSummary,
) -> Manifest:
    """Write every artifact of the final bundle to the case container and build the manifest.

    Each entry's hash is the sha256 of the exact bytes written, so reading a
    path back and hashing it reproduces ``file_hashes[path]``.
    """
    bundle = final.bundle
    entries: list[ManifestEntry] = []
    file_hashes: dict[str, str] = {}

    for item in bundle.items():
        relative_path = _item_path(item)
        data = to_canonical_bytes(item)
        store.save_file(case_id, relative_path, data)
        digest = sha256_hex(data)
        file_hashes[relative_path] = digest
        entries.append(
            ManifestEntry(
                id=item.id,
                relative_path=relative_path,
                type=item.kind,
                gated=item.gated,
                hash=digest,
                size_bytes=len(data),
            )
        )

    bundle_data = to_canonical_bytes(final)
    store.save_file(case_id, BUNDLE_PATH, bundle_data)
    file_hashes[BUNDLE_PATH] = sha256_hex(bundle_data)

    manifest = Manifest(
        case_id=case_id,
        version=bundle.version,
        entries=entries,
        visibility=classify_visibility(bundle.gating_graph),
        file_hashes=file_hashes,
        refinement=refinement,
    )
    store.save_file(case_id, MANIFEST_PATH, manifest.model_dump_json(by_alias=True, indent=2).encode("utf-8"))
    logger.info("Packaged %s: %d entries, refinement clean=%s capped=%s", case_id, len(entries), refinement.clean, refinement.capped)
    return manifest


def verify_manifest(store: CaseStateStore, manifest: Manifest) -> list[str]:
    """Return the relative paths whose stored bytes no longer match the manifest hash."""
    mismatched: list[str] = []
    for relative_path, expected in manifest.file_hashes.items():
        matches = store.read_files(manifest.case_id, relative_path)
        if len(matches) != 1 or sha256_hex(matches[0].data) != expected:
            mismatched.append(relative_path)
    return mismatched
