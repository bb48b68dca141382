import logging
import re
from typing import Any, Iterable, List, Optional

from .models import SpeechCheck

logger = logging.getLogger(__name__)

MAX_MEAN_NO_SPEECH = 0.5
SEGMENT_NO_SPEECH_CUTOFF = 0.7
MIN_CHARS = 100
MIN_WORDS = 15
MIN_UNIQUE_RATIO = 0.5
MAX_DIGITS = 5

# Engagement bait and transcription filler that never makes a usable hook
GARBAGE_PHRASES = (
    "thanks for watching",
    "thank you for watching",
    "don't forget to subscribe",
    "like and subscribe",
    "subscribe to my channel",
    "subscribe for more",
    "follow for more",
    "link in bio",
    "link in my bio",
    "hit the bell",
    "smash that like",
    "tag a friend",
    "comment below",
    "share this video",
    "subtitles by the amara.org community",
)

_LEADING_NUMBER = re.compile(r"^\d+\s")
_DIGIT = re.compile(r"\d")


def _field(segment: Any, name: str, default=None):
    if isinstance(segment, dict):
        return segment.get(name, default)
    return getattr(segment, name, default)


def _reject(reason: str, text: str = "") -> SpeechCheck:
    logger.info(f"Transcript rejected: {reason}")
    return SpeechCheck(has_speech=False, reason=reason, text=text)


def check_speech(segments: Optional[Iterable[Any]], text: Optional[str] = None) -> SpeechCheck:
    """
    Decides whether a transcription holds real speech worth analyzing.

    Args:
        segments: Whisper segments (objects or dicts) carrying no_speech_prob and text.
        text: The flattened transcript, used when segments carry no text.

    Returns:
        SpeechCheck with has_speech, the rejection reason if any, and the
        transcript rebuilt from the segments that were kept.
    """
    segments: List[Any] = list(segments or [])
    if not segments:
        return _reject("no_segments")

    probs = [float(_field(s, "no_speech_prob", 0.0) or 0.0) for s in segments]
    mean_prob = sum(probs) / len(probs)
    if mean_prob > MAX_MEAN_NO_SPEECH:
        return _reject("no_speech")

    kept = [s for s, p in zip(segments, probs) if p < SEGMENT_NO_SPEECH_CUTOFF]
    if not kept:
        return _reject("all_segments_filtered")

    pieces = [(_field(s, "text", "") or "").strip() for s in kept]
    rebuilt = " ".join(p for p in pieces if p)
    if not rebuilt:
        rebuilt = text or ""
    rebuilt = rebuilt.strip()

    words = rebuilt.split()
    if len(rebuilt) < MIN_CHARS or len(words) < MIN_WORDS:
        return _reject("too_short", rebuilt)

    lowered = rebuilt.lower()
    for phrase in GARBAGE_PHRASES:
        if phrase in lowered:
            return _reject("garbage_phrase", rebuilt)

    if len(words) > 5:
        unique_ratio = len({w.lower() for w in words}) / len(words)
        if unique_ratio < MIN_UNIQUE_RATIO:
            return _reject("song_lyrics", rebuilt)

    if _LEADING_NUMBER.match(rebuilt) or len(_DIGIT.findall(rebuilt)) > MAX_DIGITS:
        return _reject("gibberish", rebuilt)

    return SpeechCheck(has_speech=True, text=rebuilt)
