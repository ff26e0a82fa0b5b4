# backend/themes.py

import random
from typing import List, Optional

# Used when the player leaves the subject empty in DIFF / WRONG mode
RANDOM_THEMES: List[str] = [
    "A futuristic street market",
    "A cozy medieval tavern",
    "An underwater research base",
    "A steampunk workshop",
    "A magical library in the clouds",
    "A modern penthouse kitchen",
    "A quiet suburban garden",
    "An ancient Egyptian temple interior",
    "A bustling space station lobby",
    "A rustic forest cabin",
]


def pick_theme(rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(RANDOM_THEMES)
