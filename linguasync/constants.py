"""
Synchronization engine constants.

Storage keys, timing defaults and scoring rules shared across modules.
No runtime configuration here - pure constants only.
"""
from typing import Tuple

# Local durable storage keys. The progress key gets ":<user id>" appended
# when the document is scoped to an authenticated identity.
SESSION_STORAGE_KEY: str = "lingua_supabase_session_v1"
PROGRESS_STORAGE_KEY: str = "lingua_avventura_progress_v1"

# Default remote table holding one progress row per user.
DEFAULT_PROGRESS_TABLE: str = "user_progress"

# A session expiring within this many seconds is refreshed before use.
EXPIRY_MARGIN_SECONDS: int = 30

# Quiet period before a batch of mutations is written out.
DEFAULT_DEBOUNCE_SECONDS: float = 5.0

DEFAULT_REQUEST_TIMEOUT_SECONDS: float = 10.0

# Bonus awarded the first time a word is marked as learned.
FIRST_LEARN_XP_BONUS: int = 5

XP_PER_LEVEL: int = 100

DEFAULT_COMPLETION_KINDS: Tuple[str, ...] = (
    "flashcards",
    "quiz",
    "matching",
    "review",
    "gameCheeseEaten",
)

NARRATION_MODES: Tuple[str, ...] = ("it", "fr", "en")
THEME_MODES: Tuple[str, ...] = ("light", "dark", "system")
