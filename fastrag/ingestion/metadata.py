"""Deterministic text statistics, language, keyword and entity extraction."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List

from langdetect import DetectorFactory, LangDetectException, detect

DetectorFactory.seed = 0

_ENGLISH_FUNCTION_WORDS = {
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
}

_EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_URL_PATTERN = re.compile(r"https?://[^\s]+")
_DATE_PATTERN = re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b|\b\d{4}-\d{2}-\d{2}\b")
_NUMBER_PATTERN = re.compile(r"\b\d+(?:\.\d+)?\b")
_NON_WORD = re.compile(r"[^\w\s]")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")

MAX_KEYWORDS = 10
MAX_NUMBERS = 20


@dataclass
class MetadataExtractor:
    """Enrich content metadata with counts, language, keywords and entities."""

    max_keywords: int = MAX_KEYWORDS
    english_ratio: float = 0.1

    def extract(self, text: str, base: Dict[str, Any] | None = None) -> Dict[str, Any]:
        metadata = dict(base or {})
        metadata["word_count"] = len(text.split())
        metadata["character_count"] = len(text)
        metadata["sentence_count"] = len(
            [s for s in _SENTENCE_SPLIT.split(text) if s.strip()]
        )
        metadata["paragraph_count"] = len(
            [p for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]
        )
        metadata["language"] = self.detect_language(text)
        metadata["keywords"] = self.keywords(text)
        metadata["entities"] = self.entities(text)
        return metadata

    def detect_language(self, text: str) -> str:
        words = text.lower().split()
        if not words:
            return "unknown"
        hits = sum(1 for word in words if word in _ENGLISH_FUNCTION_WORDS)
        if hits / min(len(words), 100) > self.english_ratio:
            return "en"
        try:
            return detect(text)
        except LangDetectException:
            return "unknown"

    def keywords(self, text: str) -> List[str]:
        words = [w for w in _NON_WORD.sub("", text.lower()).split() if len(w) > 3]
        return [word for word, _ in Counter(words).most_common(self.max_keywords)]

    @staticmethod
    def entities(text: str) -> Dict[str, List[str]]:
        return {
            "emails": _EMAIL_PATTERN.findall(text),
            "urls": _URL_PATTERN.findall(text),
            "dates": _DATE_PATTERN.findall(text),
            "numbers": _NUMBER_PATTERN.findall(text)[:MAX_NUMBERS],
        }


__all__ = ["MetadataExtractor"]
