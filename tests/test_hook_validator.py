import pytest

from adspider.hook_validator import (
    dice_similarity, first_n_words, first_sentence, validate_hook,
)
from adspider.models import HookSource

TRANSCRIPT = (
    "Are you tired of waking up with sore shoulders every single morning? "
    "This pillow was designed by sleep experts to support your neck all night long. "
    "Order today and sleep better tonight."
)


def test_exact_opening_words_are_accepted_with_full_score():
    candidate = first_n_words(TRANSCRIPT, 10)

    result = validate_hook(candidate, TRANSCRIPT)

    assert result.source == HookSource.GPT
    assert result.score == 1.0
    assert result.hook == candidate


def test_substring_match_is_case_insensitive():
    result = validate_hook("ARE YOU TIRED OF WAKING UP", TRANSCRIPT)
    assert result.source == HookSource.GPT
    assert result.score == 1.0


def test_close_paraphrase_of_opening_passes_similarity():
    candidate = "Are you tired of waking up with sore shoulders every morning?"

    result = validate_hook(candidate, TRANSCRIPT)

    assert result.source == HookSource.GPT
    assert 0.6 <= result.score <= 1.0


def test_unrelated_candidate_falls_back_to_first_sentence():
    result = validate_hook("zzzz qqqq zzzz", TRANSCRIPT)

    assert result.source == HookSource.FIRST_SENTENCE
    assert result.hook == "Are you tired of waking up with sore shoulders every single morning?"


def test_line_from_the_middle_is_rejected():
    result = validate_hook("Order today and sleep better tonight.", TRANSCRIPT)
    assert result.source != HookSource.GPT


def test_falls_back_to_first_words_without_punctuation():
    transcript = " ".join(f"word{i}" for i in range(30))

    result = validate_hook("zzzz qqqq", transcript)

    assert result.source == HookSource.FIRST_N_WORDS
    assert result.hook == " ".join(f"word{i}" for i in range(12))


def test_overlong_first_sentence_falls_back_to_first_words():
    transcript = " ".join(["lorem"] * 30) + ". Second sentence here."

    result = validate_hook(None, transcript)

    assert result.source == HookSource.FIRST_N_WORDS


@pytest.mark.parametrize("candidate", [None, "", "Are you tired", "anything at all"])
@pytest.mark.parametrize("transcript", [None, "", "   "])
def test_empty_transcript_yields_no_hook(candidate, transcript):
    result = validate_hook(candidate, transcript)

    assert result.hook is None
    assert result.source == HookSource.NONE
    assert result.score == 0.0


def test_missing_candidate_uses_fallback():
    result = validate_hook(None, TRANSCRIPT)
    assert result.source == HookSource.FIRST_SENTENCE


def test_first_sentence_requires_terminal_punctuation():
    assert first_sentence("Hello there. More text") == "Hello there."
    assert first_sentence("no punctuation at all") is None


def test_dice_similarity_bounds():
    assert dice_similarity("Hello World", "hello   world") == 1.0
    assert dice_similarity("abc", "xyz") == 0.0
    assert dice_similarity("a", "abc") == 0.0
