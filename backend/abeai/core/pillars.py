"""Topic pillar detection."""

from typing import Optional

from abeai.core.config_types import PillarConfig, RulesConfig
from abeai.core.safety import normalize


def detect_pillar(message: str, rules: RulesConfig) -> Optional[PillarConfig]:
    """Return the first configured pillar whose keywords appear in the message."""
    text = normalize(message)
    for pillar in rules.pillars:
        if pillar.matches(text):
            return pillar
    return None


def is_welcome(message: str, rules: RulesConfig) -> bool:
    """The widget sends a bare trigger word when it first opens."""
    return normalize(message).strip(" !.") in rules.welcome.triggers
