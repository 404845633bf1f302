"""Salient keyword extraction for lexical checks on catalog descriptions."""

from __future__ import annotations

import re
import unicodedata

STOPWORDS = frozenset(
    """
    a al ante bajo con contra de del desde durante e el en entre hacia hasta la las lo los
    mediante o para por segun sin sobre tras u un una unas unos y incluso incluido incluida
    tipo medios auxiliares mano obra parte proporcional pp etc
    """.split()
)

_TOKEN = re.compile(r"[a-z0-9]+")


def normalize(text: str) -> str:
    """Lowercase and strip accents (``Pintura plástica`` -> ``pintura plastica``)."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def _stem(token: str) -> str:
    # Crude plural folding: paredes -> pared, tejas -> teja
    if len(token) > 4 and token.endswith("es"):
        return token[:-2]
    if len(token) > 3 and token.endswith("s"):
        return token[:-1]
    return token


def keywords(text: str) -> set[str]:
    return {
        _stem(token)
        for token in _TOKEN.findall(normalize(text))
        if len(token) > 2 and token not in STOPWORDS and not token.isdigit()
    }


def keyword_overlap(query: str, candidate: str) -> int:
    """Number of salient keywords shared by two descriptions."""
    return len(keywords(query) & keywords(candidate))
