from __future__ import annotations

from pathlib import Path

import fitz

from ..errors import UnsupportedFileType

TEXT_SUFFIXES = frozenset({".txt", ".md", ".markdown", ".csv", ".json", ".html", ".htm"})
PDF_SUFFIX = ".pdf"


def is_supported(path: str | Path) -> bool:
    suffix = Path(path).suffix.lower()
    return suffix in TEXT_SUFFIXES or suffix == PDF_SUFFIX


def extract_pdf_text(pdf_path: str | Path) -> str:
    with fitz.open(str(pdf_path)) as doc:
        pages = [page.get_text() for page in doc]
    return "\n".join(page.strip() for page in pages if page.strip())


def read_document_text(path: str | Path) -> str:
    """Return the text that will be uploaded, chunked and embedded for ``path``."""
    file_path = Path(path)
    suffix = file_path.suffix.lower()
    if not is_supported(file_path):
        raise UnsupportedFileType(suffix)
    if not file_path.is_file():
        raise FileNotFoundError(f"Document not found: {file_path}")

    if suffix == PDF_SUFFIX:
        return extract_pdf_text(file_path)
    return file_path.read_text(encoding="utf-8")
