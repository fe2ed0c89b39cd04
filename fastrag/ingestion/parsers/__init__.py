"""Helpers for parsing document formats into plain text."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict

from .documents import (
    read_doc_text,
    read_docx_text,
    read_md_text,
    read_pdf_text,
    read_txt_text,
)
from .markdown import markdown_to_text

TextReader = Callable[[Path], str]

READERS: Dict[str, TextReader] = {
    "pdf": read_pdf_text,
    "docx": read_docx_text,
    "doc": read_doc_text,
    "md": read_md_text,
    "txt": read_txt_text,
}

__all__ = [
    "READERS",
    "TextReader",
    "markdown_to_text",
    "read_doc_text",
    "read_docx_text",
    "read_md_text",
    "read_pdf_text",
    "read_txt_text",
]
