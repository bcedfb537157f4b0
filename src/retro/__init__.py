"""retro: turn AI coding session history into rules, skills and agents."""

__version__ = "0.1.0"
__description__ = "Pattern discovery and projection for AI coding sessions"

from .config import RetroConfig
from .models import Pattern, PatternStatus, Projection, SuggestedTarget
from .store import PatternStore

__all__ = [
    "Pattern",
    "PatternStatus",
    "PatternStore",
    "Projection",
    "RetroConfig",
    "SuggestedTarget",
]
