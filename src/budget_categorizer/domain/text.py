import re

_WORD_RE = re.compile(r"\b[a-z]+\b")
_TOKEN_SPLIT_RE = re.compile(r"[\s,.;:\-_/\\()\[\]{}]+")

MIN_WORD_LENGTH = 3

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
})


def extract_words(text: str | None) -> list[str]:
    """Distinct lower-case alphabetic words used by learning profiles."""
    if not text:
        return []
    words: list[str] = []
    seen = set()
    for match in _WORD_RE.finditer(text.lower()):
        word = match.group(0)
        if len(word) >= MIN_WORD_LENGTH and word not in seen:
            words.append(word)
            seen.add(word)
    return words


def tokenize_description(text: str | None) -> list[str]:
    """Model tokens: punctuation split, stop words and one-letter tokens dropped."""
    if not text or not text.strip():
        return []
    tokens: list[str] = []
    seen = set()
    for part in _TOKEN_SPLIT_RE.split(text.lower()):
        if len(part) > 1 and part not in STOP_WORDS and part not in seen:
            tokens.append(part)
            seen.add(part)
    return tokens


def normalize_counterparty(value: str | None) -> str:
    """Bank account numbers are compared without spaces and case."""
    if not value:
        return ""
    return value.upper().replace(" ", "").strip()
