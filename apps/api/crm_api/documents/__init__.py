from crm_api.documents.store import (
    DOCUMENT_CATEGORIES,
    DocumentStore,
    FileStaging,
    IncomingFile,
    StoredFile,
    normalize_category,
    rfp_document_store,
    sow_document_store,
    validate_uploads,
)

__all__ = [
    "DOCUMENT_CATEGORIES",
    "DocumentStore",
    "FileStaging",
    "IncomingFile",
    "StoredFile",
    "normalize_category",
    "rfp_document_store",
    "sow_document_store",
    "validate_uploads",
]
