from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from sourcesync.errors import ValidationError

MIB = 1024 * 1024

DOCUMENT_EXTENSIONS = (".md", ".pdf", ".txt", ".html", ".docx")
VIDEO_EXTENSIONS = (".mp4", ".mov", ".avi", ".webm")


@dataclass(frozen=True)
class KindPolicy:
    """What a source kind may do; the controller consults this instead of branching on kind."""

    kind: str
    url_based: bool
    resyncable: bool
    accepts_credentials: bool
    config_keys: frozenset[str]
    file_size_limits: Mapping[str, int] = field(default_factory=dict)

    def check_config(self, config: Mapping[str, Any]) -> None:
        unsupported = sorted(k for k, v in config.items() if v is not None and k not in self.config_keys)
        if unsupported:
            raise ValidationError(
                f"config keys not supported for {self.kind} sources: {', '.join(unsupported)}"
            )

    def normalize_locator(self, locator: Mapping[str, Any] | None) -> dict[str, Any]:
        if not isinstance(locator, Mapping):
            raise ValidationError("locator is required")
        if self.url_based:
            return {"url": _require_http_url(locator.get("url"))}
        return self._normalize_file_locator(locator)

    def _normalize_file_locator(self, locator: Mapping[str, Any]) -> dict[str, Any]:
        file_name = str(locator.get("fileName") or "").strip()
        if not file_name:
            raise ValidationError("locator.fileName is required for file sources")
        ext = PurePosixPath(file_name).suffix.lower()
        limit = self.file_size_limits.get(ext)
        if limit is None:
            allowed = ", ".join(sorted(self.file_size_limits))
            raise ValidationError(f"unsupported file type {ext or '(none)'}; allowed: {allowed}")
        size = locator.get("fileSize")
        if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
            raise ValidationError("locator.fileSize must be a positive integer")
        if size > limit:
            raise ValidationError(f"file exceeds maximum size of {limit // MIB}MB for {ext} files")
        normalized: dict[str, Any] = {
            "fileName": file_name,
            "fileSize": size,
            "contentType": str(locator.get("contentType") or "application/octet-stream"),
        }
        storage_uri = locator.get("storageUri")
        if storage_uri:
            normalized["storageUri"] = str(storage_uri)
        return normalized


def _require_http_url(raw: Any) -> str:
    url = str(raw or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError("locator.url must be an absolute http(s) URL")
    return url


KIND_POLICIES: dict[str, KindPolicy] = {
    "documentation": KindPolicy(
        kind="documentation",
        url_based=True,
        resyncable=True,
        accepts_credentials=True,
        config_keys=frozenset({"maxPages", "maxDepth", "includePaths", "excludePaths", "extractCodeBlocks"}),
    ),
    "website": KindPolicy(
        kind="website",
        url_based=True,
        resyncable=True,
        accepts_credentials=True,
        config_keys=frozenset({"maxPages", "maxDepth", "strategy", "includePaths", "excludePaths"}),
    ),
    "video": KindPolicy(
        kind="video",
        url_based=True,
        resyncable=True,
        accepts_credentials=False,
        config_keys=frozenset({"extractThumbnails"}),
    ),
    "file": KindPolicy(
        kind="file",
        url_based=False,
        resyncable=False,
        accepts_credentials=False,
        config_keys=frozenset(),
        file_size_limits={
            **{ext: 50 * MIB for ext in DOCUMENT_EXTENSIONS},
            **{ext: 500 * MIB for ext in VIDEO_EXTENSIONS},
        },
    ),
}

SOURCE_KINDS = tuple(KIND_POLICIES)


def policy_for(kind: str) -> KindPolicy:
    policy = KIND_POLICIES.get(kind)
    if policy is None:
        raise ValidationError(f"unsupported sourceKind: {kind}")
    return policy
