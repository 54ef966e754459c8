"""Content-safety checks that run before any other rule."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from abeai.core.config_types import RulesConfig
from abeai.core.i18n import get_localized


class SafetyCategory(str, Enum):
    SELF_HARM = "self_harm"
    DISORDERED_EATING = "disordered_eating"
    MINOR = "minor"


@dataclass
class SafetyOverride:
    """A canned response that replaces model output entirely."""
    category: SafetyCategory
    response: str


_YEARS_OLD = r"\s*(?:yo|y/o|yrs?[\s-]*old|years?[\s-]*old)\b"
_SELF = r"\b(?:i'm|im|i am)\s+(?:only\s+|just\s+)?"

# Only self-reported ages count; "my 8 year old" is about someone else
_AGE_PATTERNS = (
    # "i'm 15 years old", "i am a 15 year old girl", "i'm a 16yo"
    re.compile(_SELF + r"(?:an?\s+)?(\d{1,2})" + _YEARS_OLD),
    # "my age is 17", "age: 12", "age 14" but not "at age 12"
    re.compile(
        r"\b(?:my age is|(?:i'm|im|i am)\s+aged|(?<!\bat\s)(?<!\bby\s)(?<!\bsince\s)age)"
        r"\s*:?\s*(\d{1,2})\b"
    ),
    # "13 yo here", "15 years old and ..." unless it belongs to someone else
    re.compile(
        r"(?<!\ba\s)(?<!\ban\s)(?<!\bmy\s)(?<!\bour\s)(?<!\bhis\s)(?<!\bher\s)"
        r"(?<!\bis\s)(?<!'s\s)(?<!\byour\s)(?<!\btheir\s)"
        r"\b(\d{1,2})" + _YEARS_OLD
    ),
    # bare "i'm 16" only when the number ends the clause
    re.compile(
        _SELF + r"(\d{1,2})(?![.,]\d)"
        r"(?=\s*(?:[,.!?;)]|$|(?:and|but|so|now|here|too)\b))"
    ),
)


def normalize(message: str) -> str:
    """Lower-case and straighten curly apostrophes for phrase matching."""
    return message.lower().replace("’", "'").replace("‘", "'").strip()


def scan_crisis(message: str, rules: RulesConfig, locale: str) -> Optional[SafetyOverride]:
    """
    Check a message against the self-harm and disordered-eating phrase lists.

    Self-harm is checked first; a match on either list returns the fixed
    supportive message for that list.
    """
    text = normalize(message)
    crisis = rules.crisis

    if any(phrase in text for phrase in crisis.self_harm_phrases):
        return SafetyOverride(
            category=SafetyCategory.SELF_HARM,
            response=get_localized(crisis.self_harm_response, locale),
        )

    if any(phrase in text for phrase in crisis.disordered_eating_phrases):
        return SafetyOverride(
            category=SafetyCategory.DISORDERED_EATING,
            response=get_localized(crisis.disordered_eating_response, locale),
        )

    return None


def extract_age(message: str) -> Optional[int]:
    """Find a self-reported age such as "I'm 15 years old" or "age 14"."""
    text = normalize(message)
    for pattern in _AGE_PATTERNS:
        match = pattern.search(text)
        if match:
            age = int(match.group(1))
            if age > 0:
                return age
    return None


def check_minor(
    message: str,
    rules: RulesConfig,
    locale: str,
    profile_age: Optional[int] = None,
) -> Optional[SafetyOverride]:
    """Refuse advice when the user says, or their profile says, they are under age."""
    threshold = rules.minor.age_threshold
    age = extract_age(message)
    if age is None:
        age = profile_age

    if age is not None and age < threshold:
        return SafetyOverride(
            category=SafetyCategory.MINOR,
            response=get_localized(rules.minor.refusal, locale),
        )
    return None
