from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from docx import Document
from pypdf import PdfReader

from .markdown import markdown_to_text

logger = logging.getLogger(__name__)

TEXT_ENCODINGS = ("utf-8-sig", "utf-8", "latin-1")


def _read_text_with_fallbacks(path: Path, encodings: Iterable[str]) -> str:
    for enc in encodings:
        try:
            return path.read_text(encoding=enc)
        except (UnicodeError, LookupError) as exc:
            logger.debug("Failed to read %s with encoding %s: %s", path, enc, exc)
            continue
    return path.read_bytes().decode("utf-8", errors="ignore")


def read_txt_text(path: Path) -> str:
    """Read a plain text file."""

    return _read_text_with_fallbacks(path, TEXT_ENCODINGS)


def read_md_text(path: Path) -> str:
    """Read a Markdown file and reduce it to plain text."""

    return markdown_to_text(_read_text_with_fallbacks(path, TEXT_ENCODINGS))


def read_pdf_text(path: Path) -> str:
    """Concatenate the extracted text of every page, one page per line block."""

    reader = PdfReader(str(path))
    pages: list[str] = []
    for idx, page in enumerate(reader.pages, start=1):
        try:
            text = page.extract_text() or ""
        except Exception as exc:
            logger.debug("Failed to extract page %s of %s: %s", idx, path, exc)
            text = ""
        pages.append(text)
    return "\n".join(pages)


def read_docx_text(path: Path) -> str:
    """Extract text from a Word document including paragraphs and tables."""

    document = Document(str(path))
    parts: list[str] = []

    for paragraph in document.paragraphs:
        text = paragraph.text.strip()
        if text:
            parts.append(text)

    for table in document.tables:
        for row in table.rows:
            cells = [
                cell.text.strip()
                for cell in row.cells
                if cell.text and cell.text.strip()
            ]
            if cells:
                parts.append(" | ".join(cells))

    return "\n\n".join(parts)


OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


def read_doc_text(path: Path) -> str:
    """Read a ``.doc`` file that is really an Office Open XML document.

    Word 97-2003 binary files (OLE2 containers) cannot be read by
    python-docx and are rejected with a message asking for conversion.
    """

    with open(path, "rb") as handle:
        header = handle.read(len(OLE2_MAGIC))
    if header == OLE2_MAGIC:
        raise ValueError(
            "legacy binary .doc (Word 97-2003) files are not supported; convert to .docx"
        )
    return read_docx_text(path)
