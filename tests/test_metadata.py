from fastrag.ingestion.metadata import MetadataExtractor


def test_extract_counts_and_keeps_base_metadata():
    text = "The cat sat on the mat.\n\nThe dog barked at the cat!"
    metadata = MetadataExtractor().extract(text, {"file_type": "txt"})

    assert metadata["file_type"] == "txt"
    assert metadata["word_count"] == 12
    assert metadata["character_count"] == len(text)
    assert metadata["sentence_count"] == 2
    assert metadata["paragraph_count"] == 2
    assert metadata["language"] == "en"


def test_keywords_skip_short_words_and_rank_by_frequency():
    text = "Python python parsing, parsing PARSING with tools."
    keywords = MetadataExtractor().keywords(text)
    assert keywords[0] == "parsing"
    assert keywords[1] == "python"
    assert "with" in keywords
    assert "the" not in keywords


def test_keyword_limit():
    text = " ".join(f"word{i:02d}" for i in range(30))
    assert len(MetadataExtractor().keywords(text)) == 10


def test_entities():
    text = (
        "Mail ops@example.com or see https://example.com/docs before "
        "2024-03-01 or 12/31/2023. Total 42 items at 3.5 each."
    )
    entities = MetadataExtractor.entities(text)
    assert entities["emails"] == ["ops@example.com"]
    assert entities["urls"] == ["https://example.com/docs"]
    assert entities["dates"] == ["2024-03-01", "12/31/2023"]
    assert "42" in entities["numbers"]
    assert "3.5" in entities["numbers"]


def test_numbers_are_capped():
    text = " ".join(str(i) for i in range(50))
    assert len(MetadataExtractor.entities(text)["numbers"]) == 20


def test_empty_text_language_is_unknown():
    assert MetadataExtractor().detect_language("") == "unknown"
    assert MetadataExtractor().detect_language("12345 67890") == "unknown"
