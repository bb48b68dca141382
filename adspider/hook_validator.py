"""
Checks that a model-proposed hook really is the opening of a transcript.

Chat models tend to pick the punchiest line from the middle of a video
instead of the words the viewer actually hears first. A candidate is kept
only when it sits inside the transcript's opening words or closely matches
them; otherwise the hook falls back to the first sentence, then to the first
few words.
"""
import logging
import re
from collections import Counter
from typing import Optional

from .models import HookSource, HookValidationResult

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.6
SUBSTRING_WINDOW = 25
START_REGION_WORDS = 15
FIRST_N_WORDS_DEFAULT = 12
SENTENCE_MIN_WORDS = 5
SENTENCE_MAX_WORDS = 25

_WHITESPACE = re.compile(r"\s+")
_FIRST_SENTENCE = re.compile(r"^(.+?[.!?])(?:\s|$)")


def clean(text: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (text or "").strip())


def first_n_words(text: str, n: int = FIRST_N_WORDS_DEFAULT) -> str:
    words = clean(text).split(" ")
    return " ".join(words[:n]).strip()


def first_sentence(text: str) -> Optional[str]:
    """Shortest leading run ending in . ! or ? followed by whitespace or the end."""
    match = _FIRST_SENTENCE.match(clean(text))
    return match.group(1).strip() if match else None


def _bigrams(text: str) -> Counter:
    return Counter(text[i:i + 2] for i in range(len(text) - 1))


def dice_similarity(a: str, b: str) -> float:
    """Dice coefficient over character-bigram multisets, case-insensitive."""
    a = clean(a).lower()
    b = clean(b).lower()
    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0

    bigrams_a = _bigrams(a)
    bigrams_b = _bigrams(b)
    intersection = sum((bigrams_a & bigrams_b).values())
    return (2.0 * intersection) / ((len(a) - 1) + (len(b) - 1))


def _is_in_opening(hook: str, transcript: str) -> bool:
    region = first_n_words(transcript, SUBSTRING_WINDOW).lower()
    return hook.lower() in region


def validate_hook(candidate: Optional[str], transcript: Optional[str]) -> HookValidationResult:
    transcript = clean(transcript)
    if not transcript:
        return HookValidationResult(reason="Empty transcript.")

    candidate = clean(candidate)
    if candidate:
        if _is_in_opening(candidate, transcript):
            logger.debug("Hook accepted: found in transcript opening.")
            return HookValidationResult(
                hook=candidate,
                source=HookSource.GPT,
                score=1.0,
                reason=f"Hook is a substring of the first {SUBSTRING_WINDOW} words.",
            )

        start_region = first_n_words(transcript, START_REGION_WORDS)
        sim = dice_similarity(candidate, start_region)
        if sim >= SIMILARITY_THRESHOLD:
            logger.debug(f"Hook accepted: similarity {sim:.1%}.")
            return HookValidationResult(
                hook=candidate,
                source=HookSource.GPT,
                score=sim,
                reason=f"Similarity {sim:.1%} >= threshold.",
            )

        logger.warning(f"Hook rejected (similarity {sim:.1%}): {candidate[:80]!r}")

    sentence = first_sentence(transcript)
    if sentence:
        word_count = len(sentence.split(" "))
        if SENTENCE_MIN_WORDS <= word_count <= SENTENCE_MAX_WORDS:
            logger.info(f"Hook fallback: first sentence ({word_count} words).")
            return HookValidationResult(
                hook=sentence,
                source=HookSource.FIRST_SENTENCE,
                score=1.0,
                reason=f"Fallback to first sentence ({word_count} words).",
            )

    words = first_n_words(transcript, FIRST_N_WORDS_DEFAULT)
    if words:
        logger.info(f"Hook fallback: first {FIRST_N_WORDS_DEFAULT} words.")
        return HookValidationResult(
            hook=words,
            source=HookSource.FIRST_N_WORDS,
            score=1.0,
            reason=f"Fallback to first {FIRST_N_WORDS_DEFAULT} words.",
        )

    return HookValidationResult(reason="All fallbacks failed.")
