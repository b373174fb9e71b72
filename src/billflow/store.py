"""Source document storage and local filesystem implementation."""

from __future__ import annotations

import hashlib
from pathlib import PurePath
from typing import TYPE_CHECKING, Protocol

from slugify import slugify

from billflow.models import SourceFile

if TYPE_CHECKING:
    from datetime import date
    from decimal import Decimal
    from pathlib import Path

    from billflow.models import SourceDocument


class DocumentStore(Protocol):
    """Protocol for uploaded bill document storage backends."""

    def save(
        self,
        issue_date: date,
        vendor: str | None,
        amount: Decimal | None,
        document: SourceDocument,
    ) -> SourceFile: ...

    def get_path(self, relative_path: str) -> Path: ...

    def exists(self, relative_path: str) -> bool: ...


def describe(document: SourceDocument, storage_path: str | None = None) -> SourceFile:
    """Build the SourceFile descriptor for ``document``."""
    return SourceFile(
        filename=document.filename,
        content_type=document.content_type,
        size=len(document.data),
        sha256=hashlib.sha256(document.data).hexdigest(),
        storage_path=storage_path,
    )


class LocalDocumentStore:
    """Local filesystem implementation of DocumentStore.

    Directory layout:
    {root}/{YYYY}/{MM}/{YYYY-MM-DD}__{vendor}__{amount}{suffix}
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def save(
        self,
        issue_date: date,
        vendor: str | None,
        amount: Decimal | None,
        document: SourceDocument,
    ) -> SourceFile:
        """Save the document and describe it with its path relative to the root."""
        slug = self._slugify_vendor(vendor or "unknown-vendor")
        amount_part = str(amount) if amount is not None else "unknown"
        suffix = self._safe_suffix(document.filename)
        dir_path = self.root / str(issue_date.year) / f"{issue_date.month:02d}"
        dir_path.mkdir(parents=True, exist_ok=True)

        stem = f"{issue_date.isoformat()}__{slug}__{amount_part}"
        file_path = dir_path / f"{stem}{suffix}"

        # Handle duplicates by appending numeric suffix
        counter = 1
        while file_path.exists():
            counter += 1
            file_path = dir_path / f"{stem}_{counter}{suffix}"

        file_path.write_bytes(document.data)
        return describe(document, str(file_path.relative_to(self.root)))

    def get_path(self, relative_path: str) -> Path:
        """Return the absolute path for a relative store path."""
        return self.root / relative_path

    def exists(self, relative_path: str) -> bool:
        """Check whether a file exists in the store."""
        return (self.root / relative_path).exists()

    @staticmethod
    def _slugify_vendor(vendor: str) -> str:
        """Convert vendor name to a filesystem-safe slug, max 50 chars."""
        return str(slugify(vendor, max_length=50)) or "unknown-vendor"

    @staticmethod
    def _safe_suffix(filename: str) -> str:
        suffix = PurePath(filename).suffix.lower()
        cleaned = "".join(ch for ch in suffix[1:] if ch.isalnum())[:10]
        return f".{cleaned}" if cleaned else ".bin"
