from .reader import extract_pdf_text, is_supported, read_document_text

__all__ = ["extract_pdf_text", "is_supported", "read_document_text"]
