"""
Dialogue Orchestrator

Pure decision logic: given the child's age, engagement, the previous mode and
the signals of the turn just captured, pick the next conversational mode,
token budget and prosody.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Tuple

import numpy as np

CLARIFY_CONFIDENCE = 0.75
LONG_SILENCE_MS = 6000


class Mode(Enum):
    """Conversational modes"""
    CHAT = "chat"
    STORY = "story"
    GAME = "game"
    COACHING = "coaching"
    REPAIR = "repair"
    BEDTIME = "bedtime"
    BREAK = "break"


class Prosody(Enum):
    """Delivery style requested from speech synthesis"""
    CALM = "calm"
    EXCITED = "excited"
    SOOTHING = "soothing"
    SINGING = "singing"
    NEUTRAL = "neutral"


class Sentiment(Enum):
    POSITIVE = "pos"
    NEUTRAL = "neu"
    NEGATIVE = "neg"


class Energy(Enum):
    LOW = "low"
    MEDIUM = "med"
    HIGH = "high"


@dataclass(frozen=True)
class TurnSignals:
    """Signals measured for one turn"""
    stt_confidence: float
    interrupted: bool = False
    silence_ms: int = 0
    avg_turn_secs: float = 0.0
    sentiment: Sentiment = Sentiment.NEUTRAL
    energy: Energy = Energy.MEDIUM

    def __post_init__(self):
        if not 0.0 <= self.stt_confidence <= 1.0:
            raise ValueError(f"stt_confidence must be in [0, 1], got {self.stt_confidence}")
        if self.silence_ms < 0:
            raise ValueError(f"silence_ms must be >= 0, got {self.silence_ms}")


@dataclass(frozen=True)
class Decision:
    """What the companion should do next"""
    mode: Mode
    tok_max: int
    need_clarify: bool
    prosody: Prosody


# (not engaged, engaged) budgets per age bracket
TOKEN_BUDGETS = {
    "5_and_under": (50, 90),
    "6_to_8": (90, 140),
    "9_and_over": (150, 220),
}


def age_bracket(age: int) -> str:
    if age <= 5:
        return "5_and_under"
    if age <= 8:
        return "6_to_8"
    return "9_and_over"


def token_budget(age: int, engaged: bool) -> int:
    low, high = TOKEN_BUDGETS[age_bracket(age)]
    return high if engaged else low


Override = Tuple[str, Callable[[int, Mode, TurnSignals], bool], Mode]

# Evaluated in order; every matching guard reassigns the mode, so the LAST
# matching guard wins.
MODE_OVERRIDES: List[Override] = [
    ("long_silence", lambda age, last, s: s.silence_ms > LONG_SILENCE_MS, Mode.GAME),
    ("negative_sentiment", lambda age, last, s: s.sentiment == Sentiment.NEGATIVE, Mode.COACHING),
    ("low_energy_young_child", lambda age, last, s: s.energy == Energy.LOW and age <= 6, Mode.STORY),
    ("interrupted_story", lambda age, last, s: s.interrupted and last == Mode.STORY, Mode.CHAT),
    ("low_confidence", lambda age, last, s: s.stt_confidence < CLARIFY_CONFIDENCE, Mode.REPAIR),
]

PROSODY_BY_MODE = {
    Mode.STORY: Prosody.EXCITED,
    Mode.COACHING: Prosody.SOOTHING,
    Mode.GAME: Prosody.EXCITED,
}


def select_mode(age: int, last_mode: Mode, signals: TurnSignals) -> Mode:
    """Apply MODE_OVERRIDES in order with last-match-wins semantics"""
    mode = last_mode
    for _name, guard, override in MODE_OVERRIDES:
        if guard(age, last_mode, signals):
            mode = override
    return mode


def decide_next(age: int, engaged: bool, last_mode: Mode, signals: TurnSignals) -> Decision:
    """Pick the next mode, token budget and prosody"""
    mode = select_mode(age, last_mode, signals)
    return Decision(
        mode=mode,
        tok_max=token_budget(age, engaged),
        need_clarify=signals.stt_confidence < CLARIFY_CONFIDENCE,
        prosody=PROSODY_BY_MODE.get(mode, Prosody.NEUTRAL),
    )


# Signal derivation

ENERGY_LOW_RMS = 0.02
ENERGY_HIGH_RMS = 0.12
ENGAGED_TURN_SECS = 2.5

_NEGATIVE_WORDS = {
    "sad", "angry", "mad", "scared", "afraid", "hate", "cry", "crying", "hurt",
    "lonely", "bored", "upset", "worried", "bad", "mean", "tired", "stupid",
}
_POSITIVE_WORDS = {
    "happy", "love", "fun", "great", "awesome", "cool", "yay", "like", "good",
    "excited", "best", "wow", "funny", "amazing",
}
_WORD_RE = re.compile(r"[a-z']+")


def classify_energy(rms: float) -> Energy:
    """Bucket a normalized RMS level (0..1) into low/med/high"""
    if rms < ENERGY_LOW_RMS:
        return Energy.LOW
    if rms > ENERGY_HIGH_RMS:
        return Energy.HIGH
    return Energy.MEDIUM


def rms_level(pcm: bytes) -> float:
    """Normalized RMS of 16-bit PCM audio"""
    samples = np.frombuffer(pcm, dtype=np.int16)
    if samples.size == 0:
        return 0.0
    normalized = samples.astype(np.float32) / 32768.0
    return float(np.sqrt(np.mean(normalized ** 2)))


def classify_sentiment(text: str) -> Sentiment:
    """Lexicon-based sentiment for short child utterances"""
    words = _WORD_RE.findall(text.lower())
    negative = sum(1 for w in words if w in _NEGATIVE_WORDS)
    positive = sum(1 for w in words if w in _POSITIVE_WORDS)
    # "not happy" style negation flips a positive hit
    negated = sum(
        1 for prev, w in zip(words, words[1:])
        if prev in ("not", "don't", "dont", "never") and w in _POSITIVE_WORDS
    )
    positive -= negated
    negative += negated

    if negative > positive:
        return Sentiment.NEGATIVE
    if positive > negative:
        return Sentiment.POSITIVE
    return Sentiment.NEUTRAL


def is_engaged(avg_turn_secs: float, energy: Energy = Energy.MEDIUM) -> bool:
    """A child is engaged when turns are not clipped and energy isn't flat"""
    return avg_turn_secs >= ENGAGED_TURN_SECS and energy != Energy.LOW
