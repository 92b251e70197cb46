"""
Payment-evidence path resolution.

Stored `payment_evidence` values drifted across several conventions over
the life of the system:

- raw storage URLs (``https://<host>/storage/v1/object/public/<bucket>/...``)
- the old ``payment-evidence/`` folder (renamed to ``evidence/``)
- the canonical ``evidence/<user_id>/<event_id>/<filename>`` layout

Rather than migrating every record up front, reads generate an ordered set
of candidate keys and probe storage until one downloads. Candidates are
probed strictly in generation order, so the most specific transformations
are generated first.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

from werkzeug.utils import secure_filename

from app.procuretrain.constants import EVIDENCE_CONTENT_TYPES, EVIDENCE_PREFIX, LEGACY_EVIDENCE_PREFIX
from app.procuretrain.storage import Storage, StorageAccessDenied, StorageNotFound

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "File not found after trying all path variations"

# Checked in this order against the original path.
_STRIP_PREFIXES = ("/storage/v1/object/", "/storage/v1/object/public/", "public/")

_UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


class _OrderedPaths:
    """Insertion-ordered set of non-empty candidate paths."""

    def __init__(self) -> None:
        self._items: dict[str, None] = {}

    def add(self, path: str | None) -> None:
        if path and path not in self._items:
            self._items[path] = None

    def as_list(self) -> list[str]:
        return list(self._items)


def _url_path(original: str) -> str:
    """Reduce a full URL to its (unquoted) path; other strings pass through."""
    if "://" not in original:
        return original
    parts = urlsplit(original)
    return unquote(parts.path) or original


def _strip_prefix(path: str, prefix: str) -> str:
    return path[len(prefix):] if path.startswith(prefix) else path


def _stripped_variants(path: str, bucket: str | None) -> list[str]:
    variants = [_strip_prefix(path, prefix) for prefix in _STRIP_PREFIXES]
    variants.append(path.lstrip("/"))
    if bucket:
        bucket_prefix = f"{bucket.strip('/')}/"
        for v in list(variants):
            if v.startswith(bucket_prefix):
                variants.append(v[len(bucket_prefix):])
    return variants


def generate_path_variations(original_path: str, *, user_id: str | None = None, bucket: str | None = None) -> list[str]:
    """
    Build the ordered, de-duplicated list of storage keys to try for a stored
    evidence reference. First entry is always the path verbatim.
    """
    original = original_path or ""
    if not original.strip():
        return []
    paths = _OrderedPaths()
    paths.add(original)

    source = _url_path(original)
    paths.add(source)

    stripped = _stripped_variants(source, bucket)
    for p in stripped:
        paths.add(p)

    segments = [s for s in source.split("/") if s]
    filename = segments[-1] if segments else ""
    paths.add(filename)

    for p in stripped:
        if p.startswith(LEGACY_EVIDENCE_PREFIX):
            paths.add(EVIDENCE_PREFIX + p[len(LEGACY_EVIDENCE_PREFIX):])
        if p.startswith(EVIDENCE_PREFIX):
            paths.add(p[len(EVIDENCE_PREFIX):])
        else:
            paths.add(EVIDENCE_PREFIX + p)

    for i in range(2, min(4, len(segments)) + 1):
        tail = "/".join(segments[-i:])
        paths.add(tail)
        paths.add(EVIDENCE_PREFIX + tail)

    if user_id and filename:
        for candidate_event_id in _UUID_RE.findall(original):
            if candidate_event_id != user_id:
                paths.add(f"{EVIDENCE_PREFIX}{user_id}/{candidate_event_id}/{filename}")

    return paths.as_list()


@dataclass(frozen=True)
class ResolveResult:
    data: bytes | None
    resolved_path: str | None
    attempted_paths: tuple[str, ...]
    skipped_paths: tuple[str, ...] = ()
    denied_paths: tuple[str, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.data is not None and self.resolved_path is not None


@dataclass(frozen=True)
class EvidenceResolver:
    """
    Locates an evidence blob given a possibly malformed stored path.

    When ``user_id`` is set, any candidate that does not literally contain
    it is skipped without probing, so a resolver scoped to one user never
    reads another user's blob.
    """

    storage: Storage
    user_id: str | None = None

    @property
    def bucket(self) -> str:
        return getattr(self.storage, "bucket", "")

    def candidates(self, evidence_path: str) -> list[str]:
        return generate_path_variations(evidence_path, user_id=self.user_id, bucket=self.bucket)

    def resolve_and_download(self, evidence_path: str) -> ResolveResult:
        candidates = self.candidates(evidence_path)
        logger.debug("Generated %d path variations for %s", len(candidates), evidence_path)

        skipped: list[str] = []
        denied: list[str] = []
        probes = 0
        started = time.monotonic()
        for path in candidates:
            if self.user_id and self.user_id not in path:
                skipped.append(path)
                continue

            probes += 1
            try:
                data = self.storage.download(path)
            except StorageNotFound:
                logger.debug("Evidence miss: %s", path)
                continue
            except StorageAccessDenied as e:
                # Still a miss, but surfaced separately: it usually means a
                # bucket policy problem rather than a missing file.
                denied.append(path)
                logger.warning("Evidence probe denied by storage (bucket=%s path=%s): %s", self.bucket, path, e)
                continue
            except Exception as e:
                logger.warning("Evidence probe failed (bucket=%s path=%s): %s", self.bucket, path, e)
                continue

            if data is None:
                continue
            logger.info(
                "Resolved evidence %s -> %s after %d probe(s) in %.2fs",
                evidence_path,
                path,
                probes,
                time.monotonic() - started,
            )
            return ResolveResult(
                data=data,
                resolved_path=path,
                attempted_paths=tuple(candidates),
                skipped_paths=tuple(skipped),
                denied_paths=tuple(denied),
            )

        logger.warning(
            "Evidence not found for %s (bucket=%s, candidates=%d, skipped=%d, denied=%d)",
            evidence_path,
            self.bucket,
            len(candidates),
            len(skipped),
            len(denied),
        )
        return ResolveResult(
            data=None,
            resolved_path=None,
            attempted_paths=tuple(candidates),
            skipped_paths=tuple(skipped),
            denied_paths=tuple(denied),
            error=NOT_FOUND_MESSAGE,
        )


def canonical_from_legacy(path: str | None) -> str | None:
    """Rewrite a ``payment-evidence/...`` reference to ``evidence/...``; None if not legacy."""
    if path and path.startswith(LEGACY_EVIDENCE_PREFIX):
        return EVIDENCE_PREFIX + path[len(LEGACY_EVIDENCE_PREFIX):]
    return None


def guess_content_type(path: str) -> str:
    filename = (path or "").rsplit("/", 1)[-1]
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return EVIDENCE_CONTENT_TYPES.get(ext, "application/octet-stream")


def build_evidence_key(user_id: str, event_id: str, original_filename: str, *, now_ms: int | None = None) -> str:
    """Canonical upload key: evidence/<user>/<event>/evidence_<epoch ms>.<ext>"""
    fn = secure_filename(original_filename or "")
    ext = fn.rsplit(".", 1)[-1].lower() if "." in fn else "bin"
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{EVIDENCE_PREFIX}{user_id}/{event_id}/evidence_{stamp}.{ext}"
