"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for every timing and sizing rule in the bridge.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Components take these as constructor defaults so tests can shrink them.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Gateway protocol
# =============================================================================

GATEWAY_PROTOCOL_VERSION: Final[int] = 3

GATEWAY_CLIENT_ID: Final[str] = "gateway-client"
GATEWAY_CLIENT_DISPLAY_NAME: Final[str] = "G1 Bridge"
GATEWAY_CLIENT_VERSION: Final[str] = "0.6.0"
GATEWAY_CLIENT_PLATFORM: Final[str] = "linux"
GATEWAY_CLIENT_MODE: Final[str] = "cli"

REQUEST_ID_PREFIX: Final[str] = "g1"

CHAT_SEND_METHOD: Final[str] = "chat.send"
CONNECT_METHOD: Final[str] = "connect"
NEW_SESSION_COMMAND: Final[str] = "/new"

# =============================================================================
# Gateway timing
# =============================================================================

REQUEST_TIMEOUT_MS: Final[int] = 60_000

TURN_SOFT_TIMEOUT_MS: Final[int] = 45_000
TURN_HARD_TIMEOUT_MS: Final[int] = 300_000

# Window after lifecycle "end" during which a late "final" may still land
TURN_END_GRACE_MS: Final[int] = 2_000

RECONNECT_BASE_DELAY_MS: Final[int] = 5_000
RECONNECT_MAX_DELAY_MS: Final[int] = 60_000

# =============================================================================
# Canned replies
# =============================================================================

OFFLINE_REPLY: Final[str] = "{agent} offline - reconnecting..."
SEND_FAILED_REPLY: Final[str] = "Failed to reach {agent}"
HARD_TIMEOUT_REPLY: Final[str] = "{agent} is taking too long."

# Case-insensitive prefixes that mean "the agent chose not to answer"
NO_REPLY_SENTINELS: Final[Tuple[str, ...]] = ("NO_REPLY", "NO_RE")

# =============================================================================
# Prompt prefixes
# =============================================================================

DISPLAY_PROMPT_PREFIX: Final[str] = (
    "G1 BRIDGE DISPLAY: Use only 2-3 short sentences, no markdown, no emojis!\n\n"
)
COPILOT_PROMPT_PREFIX: Final[str] = (
    "G1 COPILOT MODE: The user is having a conversation nearby. "
    "You are listening silently. Do NOT respond directly. Instead, provide "
    "1-2 short contextual hints, facts, or suggestions that might help the "
    "user. No markdown, no emojis. Ultra short.\n\nOverheard: "
)

# =============================================================================
# Display arbiter
# =============================================================================

PAGE_CHUNK_CHARS: Final[int] = 250
PAGE_MIN_CHUNK_CHARS: Final[int] = 100
PAGE_DWELL_MS: Final[int] = 8_000
REPLY_TRAILING_GRACE_MS: Final[int] = 4_000

WELCOME_DURATION_MS: Final[int] = 3_000
STATUS_DURATION_MS: Final[int] = 3_000
MIC_STATUS_DURATION_MS: Final[int] = 2_000
NOTIFICATION_DURATION_MS: Final[int] = 10_000
BITMAP_DURATION_MS: Final[int] = 10_000

# Solid-black frame shown before clearing a bitmap
BITMAP_BLACK_FRAME_MS: Final[int] = 300
BITMAP_WIDTH_PX: Final[int] = 526
BITMAP_HEIGHT_PX: Final[int] = 100

THINKING_BODY: Final[str] = "Thinking..."
WAITING_BODY: Final[str] = "Moment..."

# =============================================================================
# Input batching / dedup
# =============================================================================

COPILOT_DEBOUNCE_MS: Final[int] = 3_000
COPILOT_SAFETY_MS: Final[int] = 60_000

NOTIFICATION_DEDUP_WINDOW_MS: Final[int] = 5_000
NOTIFICATION_MAX_BODY_CHARS: Final[int] = 150
NOTIFICATION_MIN_CUT_CHARS: Final[int] = 80

# =============================================================================
# Session / device gestures
# =============================================================================

HEAD_HOLD_MS: Final[int] = 6_000

COPILOT_TOGGLE_PHRASES: Final[Tuple[str, ...]] = (
    "copilot modus",
    "copilot mode",
    "copilot an",
    "copilot aus",
    "copilot on",
    "copilot off",
    "copilotmodus",
)
NEW_SESSION_PHRASES: Final[Tuple[str, ...]] = ("neue session", "new session")

# Reference cards are clipped to this many characters (ellipsis included)
CARD_MAX_CHARS: Final[int] = 280
NOTIFICATION_DEFAULT_APP: Final[str] = "Notification"
