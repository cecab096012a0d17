"""
Default title normalization for identity resolution.
"""

import re

EMPTY_TITLE = "Empty_Title"

_WHITESPACE = re.compile(r"\s+")
_PARENTHETICAL = re.compile(r"\s*\([^)]*\)\s*")
_LEADING_ARTICLE = re.compile(r"^(The|A|An)_")
_TRAILING_KIND = re.compile(r"_(article|page|category)$", re.IGNORECASE)
_TRAILING_DISAMBIGUATION = re.compile(r"_(disambiguation)$")
_SYMBOLS = re.compile(r"[§©®™]")
_PUNCTUATION = re.compile(r"[!@#%^&*+={}|;:<>?\\/]+")
_UNDERSCORES = re.compile(r"_{2,}")

_CHARACTER_FOLDS = (
    ("–", "-"),  # en dash
    ("—", "-"),  # em dash
    ("‘", "'"),
    ("’", "'"),
    ("“", '"'),
    ("”", '"'),
)

_CURRENCIES = (
    ("€", "Euro"),
    ("£", "Pound"),
    ("¥", "Yen"),
    ("$", "Dollar"),
)


def normalize_title(title: str) -> str:
    """
    Fold superficial formatting differences out of a page title.

    Args:
        title: Raw page title (spaces or underscores)

    Returns:
        Normalized title; never empty
    """
    text = _WHITESPACE.sub("_", title or "")
    text = _PARENTHETICAL.sub("", text)
    for old, new in _CHARACTER_FOLDS:
        text = text.replace(old, new)

    text = _LEADING_ARTICLE.sub("", text)
    text = _TRAILING_KIND.sub("", text)
    text = _TRAILING_DISAMBIGUATION.sub("", text)

    for symbol, name in _CURRENCIES:
        text = text.replace(symbol, name)
    text = _SYMBOLS.sub("", text)
    text = _PUNCTUATION.sub("_", text)
    text = _UNDERSCORES.sub("_", text)
    text = text.strip("_")
    return text or EMPTY_TITLE
