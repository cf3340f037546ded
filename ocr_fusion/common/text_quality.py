import re

from rapidfuzz.distance import Levenshtein


_DATE_PHONE_RES = (
    re.compile(r"\d{1,2}/\d{1,2}/\d{2,4}"),
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(r"\d{3}-\d{3}-\d{4}"),
    re.compile(r"\(\d{3}\)\s*\d{3}-\d{4}"),
)

# Easily-confused OCR glyphs plus anything outside ordinary text punctuation.
_CONFUSION_RES = (
    re.compile(r"[Il1]"),
    re.compile(r"[O0]"),
    re.compile(r"rn"),
    re.compile(r"[^A-Za-z0-9\s.,;:!?\-()]"),
)

_ALNUM = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789")
_VOWELS = set("aeiouAEIOU")
_CONFUSABLE_CHARS = set("Il1O0")
_HAS_LETTER_RE = re.compile(r"[A-Za-z]")


def text_similarity(a: str, b: str) -> float:
    """
    1 - normalized Levenshtein distance (distance / longer length).

    Symmetric; two empty strings are identical (1.0).
    """
    a = a or ""
    b = b or ""
    if not a and not b:
        return 1.0
    return float(Levenshtein.normalized_similarity(a, b))


def has_known_format(text: str) -> bool:
    """True when the text contains a recognizable date or phone number."""
    return any(r.search(text or "") for r in _DATE_PHONE_RES)


def ocr_noise_score(text: str) -> float:
    """1.0 = no confusable glyphs, 0.0 = at least half the characters are suspect."""
    if not text:
        return 1.0
    noise = sum(len(r.findall(text)) for r in _CONFUSION_RES)
    return max(0.0, 1.0 - (noise / len(text)) * 2)


def line_score(text: str) -> float:
    """
    Heuristic trust score for a whole line, used when two readings are too
    different to blend.
    """
    text = text or ""
    score = 0.5
    if has_known_format(text):
        score += 0.2
    score += ocr_noise_score(text) * 0.2
    if len(text) > 10 and _HAS_LETTER_RE.search(text):
        score += 0.1
    return min(1.0, score)


def char_score(ch: str) -> float:
    score = 0.5
    if ch in _ALNUM:
        score += 0.3
    if ch in _VOWELS:
        score += 0.1
    if ch in _CONFUSABLE_CHARS:
        score -= 0.2
    return score
