"""
Voice command recognition.

Commands work in every mode and are checked before a transcript is
treated as conversation.

- NEW_SESSION: the phrase appears anywhere in the utterance
- TOGGLE_COPILOT: the whole utterance is one of the toggle phrases once
  hyphens and .,!? are removed (strict, so normal speech never toggles)
"""

from __future__ import annotations

import re
from enum import Enum

from constants import COPILOT_TOGGLE_PHRASES, NEW_SESSION_PHRASES


class VoiceCommand(str, Enum):
    NONE = "NONE"
    NEW_SESSION = "NEW_SESSION"
    TOGGLE_COPILOT = "TOGGLE_COPILOT"


_STRIP_RE = re.compile(r"[-.,!?]")


def normalize(text: str) -> str:
    return _STRIP_RE.sub("", text.lower()).strip()


def parse_voice_command(text: str) -> VoiceCommand:
    lower = text.lower()
    if any(phrase in lower for phrase in NEW_SESSION_PHRASES):
        return VoiceCommand.NEW_SESSION
    if normalize(text) in COPILOT_TOGGLE_PHRASES:
        return VoiceCommand.TOGGLE_COPILOT
    return VoiceCommand.NONE
