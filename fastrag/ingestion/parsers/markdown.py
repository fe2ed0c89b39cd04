from __future__ import annotations

import re

from bs4 import BeautifulSoup

_FENCE_RE = re.compile(r"^\s*(```|~~~).*$", re.MULTILINE)
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_SETEXT_RE = re.compile(r"^\s*(=+|-+)\s*$", re.MULTILINE)
_BLOCKQUOTE_RE = re.compile(r"^\s*>\s?", re.MULTILINE)
_LIST_RE = re.compile(r"^(\s*)([-*+]|\d+[.)])\s+", re.MULTILINE)
_HR_RE = re.compile(r"^\s*([-*_]\s*){3,}$", re.MULTILINE)
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_REF_LINK_RE = re.compile(r"\[([^\]]+)\]\[[^\]]*\]")
_REF_DEF_RE = re.compile(r"^\s*\[[^\]]+\]:\s+\S+.*$", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"(\*\*|__|\*|_|~~)(?=\S)(.+?)(?<=\S)\1")
_CODE_RE = re.compile(r"`([^`]*)`")
_TABLE_SEP_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def markdown_to_text(markdown: str) -> str:
    """Strip Markdown markup and inline HTML, decoding entities.

    Paragraph breaks are preserved so downstream sentence and paragraph
    counts stay meaningful.
    """

    text = markdown.replace("\r\n", "\n")
    text = _FENCE_RE.sub("", text)
    text = _REF_DEF_RE.sub("", text)
    text = _HR_RE.sub("", text)
    text = _TABLE_SEP_RE.sub("", text)
    text = _HEADING_RE.sub("", text)
    text = _SETEXT_RE.sub("", text)
    text = _BLOCKQUOTE_RE.sub("", text)
    text = _LIST_RE.sub(r"\1", text)
    text = _IMAGE_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _REF_LINK_RE.sub(r"\1", text)
    text = _CODE_RE.sub(r"\1", text)
    text = _EMPHASIS_RE.sub(r"\2", text)
    text = text.replace("|", " ")

    # BeautifulSoup drops inline tags and decodes entities in one pass.
    text = BeautifulSoup(text, "html.parser").get_text()
    lines = [line.strip() for line in text.split("\n")]
    return _BLANK_RUN_RE.sub("\n\n", "\n".join(lines)).strip()
