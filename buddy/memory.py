"""
Child profile and per-child learning memory

LearningMemory keeps a topic-frequency map, a rolling average of the
preferred response length and a transcript log capped at the most recent
entries. It is persisted through the store after every change.
"""

import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .store import KeyValueStore, LEARNING_MEMORY_KEY

logger = logging.getLogger(__name__)

TRANSCRIPT_LIMIT = 20
LENGTH_SMOOTHING = 0.2

_STOPWORDS = {
    "the", "a", "an", "and", "or", "but", "is", "are", "was", "were", "be", "to",
    "of", "in", "on", "at", "for", "with", "about", "it", "this", "that", "i",
    "you", "me", "my", "your", "we", "can", "do", "does", "did", "what", "why",
    "how", "who", "when", "where", "tell", "like", "want", "please", "yes", "no",
    "okay", "ok", "so", "just", "have", "has", "there", "they", "them", "he",
    "she", "his", "her", "some", "more", "story", "buddy", "let's", "lets",
}
_WORD_RE = re.compile(r"[a-z][a-z']+")


@dataclass
class ChildProfile:
    """Read-only description of the child using the companion"""
    name: str = "friend"
    age_years: int = 6
    language: str = "en"
    interests: List[str] = field(default_factory=list)


@dataclass
class TranscriptEntry:
    speaker: str  # "user" or "buddy"
    text: str
    timestamp: float = field(default_factory=time.time)


def extract_topics(text: str) -> List[str]:
    """Content words worth counting as conversation topics"""
    return [w for w in _WORD_RE.findall(text.lower()) if w not in _STOPWORDS and len(w) > 2]


class LearningMemory:
    """Per-child topic frequencies, preferred response length and transcript log"""

    def __init__(self, store: KeyValueStore, child_id: str = "default",
                 transcript_limit: int = TRANSCRIPT_LIMIT):
        self.store = store
        self.child_id = child_id
        self.transcript_limit = transcript_limit

        self.topic_frequency: Counter = Counter()
        self.preferred_response_length: float = 0.0
        self.transcript: List[TranscriptEntry] = []
        self._load()

    @property
    def _key(self) -> str:
        return f"{LEARNING_MEMORY_KEY}:{self.child_id}"

    def _load(self) -> None:
        data = self.store.get(self._key)
        if not data:
            return
        self.topic_frequency = Counter(data.get("topic_frequency", {}))
        self.preferred_response_length = float(data.get("preferred_response_length", 0.0))
        self.transcript = [TranscriptEntry(**entry) for entry in data.get("transcript", [])]

    def _save(self) -> None:
        self.store.set(self._key, self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic_frequency": dict(self.topic_frequency),
            "preferred_response_length": self.preferred_response_length,
            "transcript": [
                {"speaker": e.speaker, "text": e.text, "timestamp": e.timestamp}
                for e in self.transcript
            ],
        }

    def append_exchange(self, user_text: str, response_text: str) -> None:
        """Log one (user, buddy) exchange, keeping only the newest entries"""
        self.transcript.append(TranscriptEntry("user", user_text))
        self.transcript.append(TranscriptEntry("buddy", response_text))
        if len(self.transcript) > self.transcript_limit:
            self.transcript = self.transcript[-self.transcript_limit:]
        self._save()

    def record_turn(self, user_text: str, turn_secs: float) -> None:
        """Update topic counts and the rolling response-length preference"""
        self.topic_frequency.update(extract_topics(user_text))
        if turn_secs > 0:
            if self.preferred_response_length == 0.0:
                self.preferred_response_length = turn_secs
            else:
                self.preferred_response_length += LENGTH_SMOOTHING * (
                    turn_secs - self.preferred_response_length
                )
        self._save()

    def top_topics(self, n: int = 3) -> List[str]:
        return [topic for topic, _count in self.topic_frequency.most_common(n)]

    def last_user_utterance(self) -> Optional[str]:
        for entry in reversed(self.transcript):
            if entry.speaker == "user":
                return entry.text
        return None
