"""
Response Coordinator

Routes each transcribed utterance to the repair flow (unclear speech) or the
normal reply flow, asks the text generators for a reply, and records the
exchange in the recent-turn history and the child's learning memory.
"""

import logging
import random
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from .config_manager import LLMConfig
from .dialogue import CLARIFY_CONFIDENCE, Decision, Mode, Prosody, TurnSignals
from .error_handling import GenerationError, run_fallback_chain
from .games import GamePrompt, pick_game
from .memory import ChildProfile, LearningMemory

logger = logging.getLogger(__name__)

CLARIFIER_PROMPTS = (
    "Can you say that again?",
    "I didn't quite catch that. Try again?",
    "What did you say?",
    "Can you speak a bit louder?",
    "Tell me again, please?",
    "I'm listening. What would you like to say?",
    "Can you repeat that for me?",
    "Say that one more time?",
)
FALLBACK_LINE = ("Hi! I'm having a little trouble right now, but I'm still here to chat! "
                 "Can you ask me something else? 😊")
HISTORY_EXCHANGES = 8

_FILLER_RE = re.compile(r"^(um+|uh+|er+|hmm+|mm+|hm+)[.!?]*$", re.IGNORECASE)
_WORD_RE = re.compile(r"[\w']+")


@dataclass
class QualityAssessment:
    is_low_quality: bool
    reasons: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return ", ".join(self.reasons) if self.reasons else "good quality"


def assess_quality(transcript: str, confidence: float,
                   duration_ms: Optional[float] = None) -> QualityAssessment:
    """Flag transcripts that are unlikely to be what a child actually said"""
    text = transcript.strip()
    reasons: List[str] = []
    suggestions: List[str] = []

    if duration_ms is not None and duration_ms < 300:
        reasons.append("too short")
        suggestions.append("Try speaking for a bit longer")
    if len(text) < 3:
        reasons.append("very short text")
        suggestions.append("Speak a little louder")
    if confidence < 0.6:
        reasons.append("low confidence")
        suggestions.append("Try speaking more clearly")
    if _FILLER_RE.match(text):
        reasons.append("only filler words")
        suggestions.append("Take your time and try again")
    if "[inaudible]" in text.lower() or "***" in text:
        reasons.append("unintelligible audio")
        suggestions.append("Move closer to your device")

    words = _WORD_RE.findall(text.lower())
    if len(words) >= 3 and len(set(words)) == 1:
        reasons.append("repeated patterns")
        suggestions.append("What did you want to say?")

    return QualityAssessment(bool(reasons), reasons, suggestions)


def maybe_repair(utterance: str, previous_user: Sequence[str]) -> str:
    """Treat a one-word utterance that matches part of the last one as a correction"""
    last = previous_user[-1] if previous_user else ""
    stripped = utterance.strip()
    is_one_word = len(stripped.split()) == 1
    looks_like_correction = (
        bool(last)
        and is_one_word
        and abs(len(stripped) - len(last)) < 8
        and stripped.lower() in last.lower()
    )
    return last if looks_like_correction else utterance


@dataclass
class GenerationRequest:
    """Everything a text generator needs for one reply"""
    message: str
    profile: ChildProfile
    history: List[Tuple[str, str]]
    decision: Decision
    favourite_topics: List[str] = field(default_factory=list)
    game: Optional[GamePrompt] = None
    repair_reason: Optional[str] = None

    @property
    def is_repair(self) -> bool:
        return self.repair_reason is not None


class TextGenerator:
    """Text-generation provider interface"""

    name = "generator"

    async def generate(self, request: GenerationRequest) -> str:
        raise NotImplementedError


MODE_GUIDANCE = {
    Mode.CHAT: "Reply in 1-2 friendly sentences and keep the conversation going.",
    Mode.STORY: "Tell a short story with a beginning, middle and end.",
    Mode.GAME: "Play a quick game with the child. Keep it light and encouraging.",
    Mode.COACHING: "The child seems upset. Be gentle, name the feeling and offer comfort.",
    Mode.REPAIR: "You did not understand the child. Ask them kindly to say it again.",
    Mode.BEDTIME: "It is bedtime. Be calm and wind down.",
    Mode.BREAK: "It is break time. Suggest stretching or a drink of water.",
}


def age_style(age: int) -> str:
    if age <= 5:
        return "Simple words and short sentences with 🐰🦖🦋 emojis."
    if age <= 8:
        return "Clear explanations with 😀🙌🤩 emojis."
    return "Detailed responses with 🤓🚀 emojis."


def build_system_prompt(request: GenerationRequest) -> str:
    profile = request.profile
    likes = ", ".join(profile.interests) or "exploring new things"
    safe_topics = " or ".join(profile.interests[:2]) if profile.interests else "animals or nature"

    lines = [
        'You are "Buddy", a cheerful AI friend for a child.',
        "",
        f"Name: {profile.name}",
        f"Age: {profile.age_years}",
        f"Language: {profile.language}",
        f"Likes: {likes}",
    ]
    if request.favourite_topics:
        lines.append(f"Favourite topics so far: {', '.join(request.favourite_topics)}")

    lines += ["", f"MODE: {request.decision.mode.value}", MODE_GUIDANCE[request.decision.mode]]
    if request.decision.prosody != Prosody.NEUTRAL:
        lines.append(f"Your reply will be spoken in a {request.decision.prosody.value} voice.")
    if request.game:
        lines.append(f"Game idea: {request.game.prompt}")

    lines += [
        "",
        age_style(profile.age_years),
        "Do not greet the child by name unless this is the first message.",
        "",
        "SAFETY",
        "No politics, brands or personal data.",
        f'If something unsafe is asked, say "Let\'s talk about {safe_topics}!" 😊',
    ]
    return "\n".join(lines)


def build_repair_prompt(request: GenerationRequest) -> str:
    return (
        'You are "Buddy", a kind AI friend for a '
        f"{request.profile.age_years} year old child. You could not understand what they said "
        f"(heard: \"{request.message}\", problem: {request.repair_reason}). "
        "Ask them to say it again in 10 words or fewer. Be warm and encouraging."
    )


class OpenAIChatGenerator(TextGenerator):
    """Replies from OpenAI chat completions"""

    name = "openai-chat"

    def __init__(self, config: LLMConfig, client: AsyncOpenAI):
        self.config = config
        self.client = client

    async def generate(self, request: GenerationRequest) -> str:
        if request.is_repair:
            messages = [
                {"role": "system", "content": build_repair_prompt(request)},
            ]
            max_tokens = 40
        else:
            messages = [{"role": "system", "content": build_system_prompt(request)}]
            for speaker, text in request.history:
                role = "user" if speaker == "user" else "assistant"
                messages.append({"role": role, "content": text})
            messages.append({"role": "user", "content": request.message})
            max_tokens = request.decision.tok_max

        logger.debug(f"Making request to {self.config.model} with {len(messages)} messages")
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=self.config.temperature,
                timeout=self.config.timeout,
            )
        except Exception as e:
            raise GenerationError(f"Chat completion failed: {e}", original_exception=e)

        if not response.choices:
            raise GenerationError("Chat completion returned no choices")
        return (response.choices[0].message.content or "").strip()


class ResponseCoordinator:
    """Chooses between repair and normal replies and keeps the exchange log"""

    def __init__(self, generators: Sequence[TextGenerator], profile: ChildProfile,
                 memory: LearningMemory, history_limit: int = HISTORY_EXCHANGES,
                 rng: Optional[random.Random] = None):
        self.generators = list(generators)
        self.profile = profile
        self.memory = memory
        self.history: Deque[Tuple[str, str]] = deque(maxlen=history_limit)
        self.rng = rng or random.Random()
        self.active_game: Optional[GamePrompt] = None

    def _history_messages(self) -> List[Tuple[str, str]]:
        messages: List[Tuple[str, str]] = []
        for user_text, buddy_text in self.history:
            messages.append(("user", user_text))
            messages.append(("buddy", buddy_text))
        return messages

    async def respond(self, text: str, signals: TurnSignals, decision: Decision,
                      duration_ms: Optional[float] = None) -> str:
        """Produce Buddy's reply for one transcribed utterance"""
        assessment = assess_quality(text, signals.stt_confidence, duration_ms)
        if signals.stt_confidence < CLARIFY_CONFIDENCE:
            reason = "low confidence"
            if assessment.is_low_quality and "low confidence" not in assessment.reasons:
                reason = f"low confidence, {assessment.reason}"
            response = await self._repair(text, decision, reason)
        elif assessment.is_low_quality:
            response = await self._repair(text, decision, assessment.reason)
        else:
            last = self.memory.last_user_utterance()
            message = maybe_repair(text, [last] if last else [])
            if message != text:
                logger.info(f"Treating '{text}' as a correction of '{message}'")
            response = await self._reply(message, decision)

        self.history.append((text, response))
        self.memory.append_exchange(text, response)
        return response

    async def _repair(self, text: str, decision: Decision, reason: str) -> str:
        logger.info(f"Repair flow for '{text}': {reason}")
        request = GenerationRequest(
            message=text,
            profile=self.profile,
            history=[],
            decision=decision,
            repair_reason=reason,
        )
        result = await run_fallback_chain(
            self.generators, lambda generator: generator.generate(request), accept=_non_empty
        )
        if not result.succeeded:
            logger.warning("All generators failed for clarifier, using a canned prompt")
            return self.rng.choice(CLARIFIER_PROMPTS)
        return result.value

    async def _reply(self, message: str, decision: Decision) -> str:
        self.active_game = pick_game(self.profile.age_years, self.rng) if decision.mode == Mode.GAME else None
        request = GenerationRequest(
            message=message,
            profile=self.profile,
            history=self._history_messages(),
            decision=decision,
            favourite_topics=self.memory.top_topics(3),
            game=self.active_game,
        )
        result = await run_fallback_chain(
            self.generators, lambda generator: generator.generate(request), accept=_non_empty
        )
        if not result.succeeded:
            logger.warning("All generators failed, using fallback line")
            return FALLBACK_LINE
        logger.info(f"Reply from {result.winner} ({decision.mode.value}, ≤{decision.tok_max} tokens)")
        return result.value


def _non_empty(value: Optional[str]) -> bool:
    return bool(value and value.strip())
