from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from crm_api.core.config import get_settings
from crm_api.core.errors import NotFoundError, ValidationError
from crm_api.documents import DocumentStore, IncomingFile, normalize_category, validate_uploads


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path))
    monkeypatch.setenv("UPLOAD_MAX_FILES", "2")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def store() -> DocumentStore:
    return DocumentStore("test-documents", entity="test")


def _file(name: str, content: bytes = b"data", category: str = "other") -> IncomingFile:
    return IncomingFile(filename=name, content_type="application/octet-stream", content=content, category=category)


def test_categories_are_normalized() -> None:
    assert normalize_category("documents.commercial") == "commercial"
    assert normalize_category("qa") == "qa_document"
    assert normalize_category("documents.unknown") == "other"
    assert normalize_category(None) == "other"


def test_upload_limits() -> None:
    with pytest.raises(ValidationError) as too_many:
        validate_uploads([_file("a"), _file("b"), _file("c")])
    assert too_many.value.code == "too_many_files"

    validate_uploads([_file("a"), _file("b")])


def test_saved_files_use_generated_names(store: DocumentStore, tmp_path: Path) -> None:
    stored = store.save(_file("Quarterly Report.PDF", b"%PDF"))

    assert stored.original_filename == "Quarterly Report.PDF"
    assert stored.stored_filename.endswith(".pdf")
    assert stored.stored_filename != stored.original_filename
    assert stored.size == 4
    assert (tmp_path / "test-documents" / stored.stored_filename).read_bytes() == b"%PDF"
    assert store.path_for(stored.stored_filename) == stored.path


def test_staging_discards_written_files_when_block_fails(store: DocumentStore, tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        with store.staging() as staging:
            staging.save(_file("one.txt"))
            staging.save(_file("two.txt"))
            raise RuntimeError("insert failed")

    assert list((tmp_path / "test-documents").iterdir()) == []


def test_staging_keeps_files_on_success(store: DocumentStore, tmp_path: Path) -> None:
    with store.staging() as staging:
        staging.save(_file("kept.txt"))

    assert len(list((tmp_path / "test-documents").iterdir())) == 1


def test_path_for_rejects_traversal_and_missing_files(store: DocumentStore) -> None:
    with pytest.raises(NotFoundError):
        store.path_for("../secrets.txt")
    with pytest.raises(NotFoundError):
        store.path_for("missing.pdf")


def test_remove_tolerates_missing_files(store: DocumentStore) -> None:
    stored = store.save(_file("gone.txt"))

    assert store.remove([stored.stored_filename, "never-existed.txt"]) == 1


def test_partial_write_is_removed(store: DocumentStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    real_write = Path.write_bytes

    def write_half_then_fail(self: Path, data: bytes) -> int:
        real_write(self, data[: len(data) // 2])
        raise OSError("No space left on device")

    monkeypatch.setattr(Path, "write_bytes", write_half_then_fail)

    with pytest.raises(OSError):
        store.save(_file("big.bin", b"0123456789"))

    assert list((tmp_path / "test-documents").iterdir()) == []
