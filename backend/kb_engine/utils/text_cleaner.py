"""Text cleaning, normalization and tokenization utilities."""
import re
from typing import List


WORD_RE = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been
    before being below between both but by can could did do does doing down during
    each few for from further had has have having he her here hers herself him
    himself his how i if in into is it its itself just me more most my myself no
    nor not now of off on once only or other our ours ourselves out over own same
    she should so some such than that the their theirs them themselves then there
    these they this those through to too under until up very was we were what when
    where which while who whom why will with would you your yours yourself
    yourselves please tell show give find get know
    """.split()
)


def clean_text(text: str) -> str:
    """
    Clean and normalize text.

    Args:
        text: Raw text to clean

    Returns:
        Text with control characters removed and whitespace collapsed
    """
    text = re.sub(r"[\x00-\x08\x0b-\x0c\x0e-\x1f]", "", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def normalize_query(query: str) -> str:
    """Trim, lowercase and collapse whitespace."""
    return re.sub(r"\s+", " ", query.strip().lower())


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric tokens, stopwords removed."""
    return [t for t in WORD_RE.findall(text.lower()) if t not in STOPWORDS]


def truncate(text: str, limit: int, ellipsis: str = "") -> str:
    """Collapse whitespace and cut to at most ``limit`` characters, ellipsis included."""
    text = clean_text(text)
    if len(text) <= limit:
        return text
    return text[: limit - len(ellipsis)] + ellipsis
