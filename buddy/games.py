"""
Mini-games offered when the dialogue switches to game mode
"""

import random
from dataclasses import dataclass
from typing import Callable, Dict, Optional

RHYME_WORDS = ['cat', 'dog', 'sun', 'fun', 'ball', 'tall']


@dataclass(frozen=True)
class GamePrompt:
    name: str
    prompt: str
    answer: str


def quick_math(age: int, rng: Optional[random.Random] = None) -> GamePrompt:
    rng = rng or random.Random()
    # Younger children get single-digit sums that stay under ten
    top = 5 if age <= 5 else 10
    a, b = rng.randint(1, top), rng.randint(1, top)
    return GamePrompt("quick_math", f"What is {a}+{b}?", str(a + b))


def rhyme_complete(age: int, rng: Optional[random.Random] = None) -> GamePrompt:
    rng = rng or random.Random()
    word = rng.choice(RHYME_WORDS)
    return GamePrompt("rhyme_complete", f"Tell me a word that rhymes with {word}!", word)


def breathing_5s(age: int, rng: Optional[random.Random] = None) -> GamePrompt:
    return GamePrompt(
        "breathing_5s",
        "Let's take 5 deep breaths together! Breathe in... and out...",
        "breathing exercise",
    )


GAMES: Dict[str, Callable[..., GamePrompt]] = {
    "quick_math": quick_math,
    "rhyme_complete": rhyme_complete,
    "breathing_5s": breathing_5s,
}


def pick_game(age: int, rng: Optional[random.Random] = None) -> GamePrompt:
    rng = rng or random.Random()
    name = rng.choice(sorted(GAMES))
    return GAMES[name](age, rng)
