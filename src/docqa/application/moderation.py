"""Inbound message screening.

The gate runs on the raw message before any retrieval or generation work,
so the ban decision is fixed before a conversation record exists.  Two
checks are made, profanity first: a word-list match (with leetspeak and
separator normalisation) and a junk heuristic for garbled input.

The English list is the one shipped with ``better-profanity``; the other
languages come from the ``wordlists/`` files next to this module.
"""

from __future__ import annotations

import re
from collections import Counter
from functools import lru_cache
from importlib.resources import files
from importlib.resources.abc import Traversable

from loguru import logger

from docqa.domain.models import ModerationDecision

WORDLIST_LANGUAGES = ("es", "fr", "de", "it", "pt", "ru", "zh", "ja", "ko", "hi", "ar")

_LEET = str.maketrans({"0": "o", "1": "i", "3": "e", "4": "a", "5": "s", "7": "t", "@": "a", "$": "s", "|": "i"})
_SEPARATORS = re.compile(r"[*_.\-]")
_SPACED_LETTERS = re.compile(r"\b([a-z])\s+([a-z])\s+([a-z])(?:\s+([a-z]+))?\b")
_PUNCTUATION = re.compile(r"[.,!?;:'\"()\[\]{}]")
# Kana, CJK ideographs and Hangul: entries in these scripts match as substrings.
_UNSPACED_SCRIPT = re.compile(r"[぀-ヿ㐀-䶿一-鿿가-힯]")
_KEYBOARD_RUNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^[qwertyuiop]+$",
        r"^[asdfghjkl]+$",
        r"^[zxcvbnm]+$",
        r"^[0-9]+$",
    )
]
_VOWELS = set("aeiou")


def _read_wordlist(resource: Traversable) -> set[str]:
    lines = resource.read_text(encoding="utf-8").splitlines()
    return {line.strip().lower() for line in lines if line.strip() and not line.startswith("#")}


@lru_cache(maxsize=1)
def default_words() -> frozenset[str]:
    """better-profanity's English list plus the bundled per-language lists."""
    words = _read_wordlist(files("better_profanity") / "profanity_wordlist.txt")
    bundled = files("docqa.application") / "wordlists"
    for name in (*WORDLIST_LANGUAGES, "custom"):
        words |= _read_wordlist(bundled / f"{name}.txt")
    return frozenset(words)


def normalize(text: str) -> str:
    """Lower-case, undo leetspeak, strip separators and evasive spacing."""
    normalized = re.sub(r"\s+", " ", text.lower())
    normalized = re.sub(r"([a-z])!([a-z])", r"\1i\2", normalized)
    normalized = normalized.translate(_LEET)
    normalized = _SEPARATORS.sub("", normalized)
    normalized = _SPACED_LETTERS.sub(lambda m: "".join(g for g in m.groups() if g), normalized)
    normalized = _PUNCTUATION.sub("", normalized)
    return normalized.strip()


def _is_latin_word(word: str) -> bool:
    return word.isascii() and word.isalpha()


class ModerationGate:
    """Synchronous ban decision for one inbound message."""

    def __init__(self, extra_words: set[str] | None = None) -> None:
        raw = default_words() | {w.lower() for w in extra_words or ()}
        # Entries are compared in the same normalised form as the message.
        self.words = {w for w in raw | {normalize(w) for w in raw} if w}

        self._unspaced = [w for w in self.words if _UNSPACED_SCRIPT.search(w)]
        bounded = sorted(
            (w for w in self.words if not _UNSPACED_SCRIPT.search(w) and (" " in w or len(w) >= 4)),
            key=len,
            reverse=True,
        )
        self._bounded = re.compile(r"\b(?:" + "|".join(map(re.escape, bounded)) + r")\b")

        # "fck" -> "fuck": listed words keyed by their letters minus one or two vowels.
        self._skeletons: dict[str, str] = {}
        for word in self.words:
            if _is_latin_word(word) and len(word) >= 4:
                skeleton = "".join(c for c in word if c not in _VOWELS)
                if len(skeleton) >= 3 and 1 <= len(word) - len(skeleton) <= 2:
                    self._skeletons.setdefault(skeleton, word)

    def check(self, message: str) -> ModerationDecision:
        if self.contains_profanity(message):
            decision = ModerationDecision(should_ban=True, reason="profanity")
        elif is_junk(message):
            decision = ModerationDecision(should_ban=True, reason="junk")
        else:
            return ModerationDecision(should_ban=False)

        logger.info("Moderation flagged message | reason={}", decision.reason)
        return decision

    def contains_profanity(self, text: str) -> bool:
        if not text:
            return False
        normalized = normalize(text)
        words = normalized.split()

        if any(word in self.words for word in words):
            return True
        if self._bounded.search(normalized):
            return True
        if any(entry in normalized for entry in self._unspaced):
            return True
        # Only vowel-less tokens: "bob" must not read as a listed word with a vowel dropped.
        return any(
            word in self._skeletons
            for word in words
            if len(word) >= 3 and _is_latin_word(word) and not _VOWELS.intersection(word)
        )


def is_junk(text: str) -> bool:
    """Heuristic for short, garbled, or keyboard-mash input."""
    trimmed = (text or "").strip()
    if len(trimmed) < 3:
        # Two letters are usually an acronym ("DM", "EU").
        return not (len(trimmed) == 2 and trimmed.isascii() and trimmed.isalpha())

    compact = re.sub(r"\s", "", trimmed)
    if not compact:
        return True

    letters = sum(1 for c in compact if c.isascii() and c.isalpha())
    if letters / len(compact) < 0.3:
        return True

    most_common = Counter(compact.lower()).most_common(1)[0][1]
    if len(compact) >= 4 and most_common / len(compact) > 0.5:
        return True

    if len(compact) >= 4 and any(p.match(compact) for p in _KEYBOARD_RUNS):
        return True

    if len(set(compact)) == 1:
        return True

    if len(compact) >= 6:
        pair = compact[:2]
        repeats = sum(1 for i in range(0, len(compact) - 1, 2) if compact[i : i + 2] == pair)
        if repeats / (len(compact) / 2) > 0.7:
            return True

    return False
