import re
import unicodedata


CONTAINMENT_SIMILARITY = 0.9

_NON_ALNUM_RE = re.compile(r"[^\w\s]|_")
_SPACES_RE = re.compile(r"\s+")


def normalize_label(value: str | None) -> str:
    text = str(value or "").casefold()
    if not text:
        return ""
    text = unicodedata.normalize("NFD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _NON_ALNUM_RE.sub("", text)
    return _SPACES_RE.sub(" ", text).strip()


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ch_a in enumerate(a, start=1):
        current = [i]
        for j, ch_b in enumerate(b, start=1):
            cost = 0 if ch_a == ch_b else 1
            current.append(
                min(
                    previous[j] + 1,  # deletion
                    current[j - 1] + 1,  # insertion
                    previous[j - 1] + cost,  # substitution
                )
            )
        previous = current
    return previous[-1]


def name_similarity(s1: str | None, s2: str | None) -> float:
    """Similarity in [0, 1] between two free-text labels.

    1.0 on a normalized exact match, 0.9 when one label contains the other
    ("A6 Lyon" / "A6 Lyon Sud"), otherwise 1 - levenshtein / longest length.
    """
    left = normalize_label(s1)
    right = normalize_label(s2)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if left in right or right in left:
        return CONTAINMENT_SIMILARITY
    distance = levenshtein(left, right)
    return 1.0 - distance / max(len(left), len(right))
