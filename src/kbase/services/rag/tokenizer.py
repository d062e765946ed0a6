from __future__ import annotations

import re

# unicode word runs; "_" and "'" join parts of one token but never start or end it
_TOKEN_RE = re.compile(r"[^\W_]+(?:[_'][^\W_]+)*")

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "from",
        "has", "have", "how", "if", "in", "into", "is", "it", "its", "of", "on",
        "or", "that", "the", "their", "then", "there", "these", "this", "to",
        "was", "were", "what", "when", "where", "which", "who", "will", "with",
    }
)


def tokenize(text: str) -> list[str]:
    return [token for token in _TOKEN_RE.findall(text.casefold()) if token not in STOPWORDS]
