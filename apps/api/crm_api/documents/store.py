from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from crm_api.core.config import get_settings
from crm_api.core.errors import NotFoundError, ValidationError
from crm_api.metrics import observe_document_cleanup, observe_documents_stored


logger = logging.getLogger("crm_api.documents")

DOCUMENT_CATEGORIES = ("commercial", "proposal", "presentation", "qa_document", "other")
_CATEGORY_ALIASES = {"qa": "qa_document"}


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    content_type: str
    content: bytes
    category: str = "other"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class StoredFile:
    original_filename: str
    stored_filename: str
    mime_type: str
    size: int
    category: str
    path: Path


def normalize_category(field_name: str | None) -> str:
    raw = (field_name or "").strip()
    if raw.startswith("documents."):
        raw = raw[len("documents.") :]
    raw = _CATEGORY_ALIASES.get(raw, raw)
    return raw if raw in DOCUMENT_CATEGORIES else "other"


def validate_uploads(files: Sequence[IncomingFile]) -> None:
    settings = get_settings()
    if len(files) > settings.upload_max_files:
        raise ValidationError(
            f"At most {settings.upload_max_files} files may be uploaded per request",
            code="too_many_files",
        )
    for item in files:
        if item.size > settings.upload_max_bytes:
            raise ValidationError(
                f"File '{item.filename}' exceeds the {settings.upload_max_bytes} byte limit",
                code="file_too_large",
                details={"filename": item.filename, "size": item.size},
            )


@dataclass
class FileStaging:
    store: DocumentStore
    written: list[StoredFile] = field(default_factory=list)

    def save(self, incoming: IncomingFile) -> StoredFile:
        stored = self.store.save(incoming)
        self.written.append(stored)
        return stored

    def discard(self) -> int:
        removed = self.store.remove(item.stored_filename for item in self.written)
        observe_document_cleanup(self.store.entity, removed)
        logger.warning("documents.cleanup", extra={"entity": self.store.entity, "file_count": removed})
        self.written.clear()
        return removed


class DocumentStore:
    """Files for one entity type, kept under ``<upload_dir>/<subdir>``.

    Stored names are a uuid4 plus the original extension; the original
    filename is metadata only and never part of the path.
    """

    def __init__(self, subdir: str, entity: str) -> None:
        self.subdir = subdir
        self.entity = entity

    @property
    def base_dir(self) -> Path:
        base = Path(get_settings().upload_dir) / self.subdir
        base.mkdir(parents=True, exist_ok=True)
        return base

    def save(self, incoming: IncomingFile) -> StoredFile:
        extension = Path(incoming.filename or "").suffix.lower()
        stored_filename = f"{uuid.uuid4()}{extension}"
        path = self.base_dir / stored_filename
        try:
            path.write_bytes(incoming.content)
        except OSError:
            path.unlink(missing_ok=True)
            raise
        observe_documents_stored(self.entity)
        return StoredFile(
            original_filename=incoming.filename or stored_filename,
            stored_filename=stored_filename,
            mime_type=incoming.content_type or "application/octet-stream",
            size=incoming.size,
            category=incoming.category,
            path=path,
        )

    def path_for(self, stored_filename: str) -> Path:
        if Path(stored_filename).name != stored_filename:
            raise NotFoundError("File not found on server", code="document_file_missing")
        path = self.base_dir / stored_filename
        if not path.is_file():
            raise NotFoundError("File not found on server", code="document_file_missing")
        return path

    def remove(self, stored_filenames: Iterable[str]) -> int:
        removed = 0
        for name in stored_filenames:
            path = self.base_dir / Path(name).name
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                logger.info("documents.already_removed", extra={"entity": self.entity, "path": str(path)})
        return removed

    @contextmanager
    def staging(self) -> Iterator[FileStaging]:
        """Track files written inside the block and delete them if it raises."""
        staging = FileStaging(store=self)
        try:
            yield staging
        except Exception:
            staging.discard()
            raise


rfp_document_store = DocumentStore("rfp-documents", entity="rfp")
sow_document_store = DocumentStore("sow-documents", entity="sow")
