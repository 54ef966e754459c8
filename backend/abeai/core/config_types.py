"""Configuration dataclasses for the rule tables loaded from JSON.

Localized text fields hold either a plain string or a
``{"default": ..., "au": ...}`` mapping resolved with ``get_localized``.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Union, Tuple, Dict

LocalizedText = Union[str, Dict[str, str]]


def _keyword_pattern(keywords: Tuple[str, ...]) -> Optional[re.Pattern]:
    """Whole-word match for any keyword, allowing plural and verb endings."""
    if not keywords:
        return None
    alternatives = "|".join(
        re.escape(keyword.lower()) for keyword in sorted(keywords, key=len, reverse=True)
    )
    return re.compile(rf"\b(?:{alternatives})(?:s|es|ing|ed)?\b")


@dataclass(frozen=True)
class PillarConfig:
    """A topic pillar: its trigger keywords and one-time safety question."""
    name: str
    keywords: Tuple[str, ...]
    context_label: str
    safety_question: LocalizedText
    acknowledgement: LocalizedText = ""
    diary_prompt: LocalizedText = ""
    support_label: str = ""
    support_url: str = ""
    _pattern: Optional[re.Pattern] = field(default=None, repr=False, compare=False)

    def matches(self, text: str) -> bool:
        """Check whether a lower-cased message mentions this pillar."""
        return bool(self._pattern and self._pattern.search(text))

    @classmethod
    def from_dict(cls, data: dict) -> "PillarConfig":
        keywords = tuple(k.strip().lower() for k in data.get("keywords", []) if k.strip())
        return cls(
            name=data["name"],
            keywords=keywords,
            context_label=data.get("context_label", data["name"]),
            safety_question=data["safety_question"],
            acknowledgement=data.get("acknowledgement", ""),
            diary_prompt=data.get("diary_prompt", ""),
            support_label=data.get("support_label", ""),
            support_url=data.get("support_url", ""),
            _pattern=_keyword_pattern(keywords),
        )


@dataclass(frozen=True)
class ButtonConfig:
    """Upgrade/link button shown under a response."""
    text: str
    url: str
    australia_only: bool = False
    hidden_for_tiers: Tuple[str, ...] = ()

    def visible_for(self, tier: str, is_australian: bool) -> bool:
        if self.australia_only and not is_australian:
            return False
        return tier not in self.hidden_for_tiers

    def to_dict(self) -> dict:
        return {"text": self.text, "url": self.url}

    @classmethod
    def from_dict(cls, data: dict) -> "ButtonConfig":
        return cls(
            text=data["text"],
            url=data["url"],
            australia_only=bool(data.get("australia_only", False)),
            hidden_for_tiers=tuple(data.get("hidden_for_tiers", [])),
        )


@dataclass(frozen=True)
class CrisisConfig:
    """Phrase lists that bypass the model entirely."""
    self_harm_phrases: Tuple[str, ...]
    disordered_eating_phrases: Tuple[str, ...]
    self_harm_response: LocalizedText
    disordered_eating_response: LocalizedText

    @classmethod
    def from_dict(cls, data: dict) -> "CrisisConfig":
        return cls(
            self_harm_phrases=tuple(p.lower() for p in data.get("self_harm_phrases", [])),
            disordered_eating_phrases=tuple(
                p.lower() for p in data.get("disordered_eating_phrases", [])
            ),
            self_harm_response=data["self_harm_response"],
            disordered_eating_response=data["disordered_eating_response"],
        )


@dataclass(frozen=True)
class MinorConfig:
    age_threshold: int
    refusal: LocalizedText

    @classmethod
    def from_dict(cls, data: dict) -> "MinorConfig":
        return cls(
            age_threshold=int(data.get("age_threshold", 18)),
            refusal=data["refusal"],
        )


@dataclass(frozen=True)
class WelcomeConfig:
    triggers: Tuple[str, ...]
    message: LocalizedText
    pillar: str

    @classmethod
    def from_dict(cls, data: dict) -> "WelcomeConfig":
        return cls(
            triggers=tuple(t.strip().lower() for t in data.get("triggers", ["welcome"])),
            message=data["message"],
            pillar=data.get("pillar", "mental"),
        )


@dataclass(frozen=True)
class UpsellConfig:
    limit_message: LocalizedText
    plan_buttons: Tuple[ButtonConfig, ...]
    explore_button: ButtonConfig
    clinic_button: ButtonConfig
    footer: LocalizedText
    footer_tiers: Tuple[str, ...] = ("free", "PAYG")

    @classmethod
    def from_dict(cls, data: dict) -> "UpsellConfig":
        return cls(
            limit_message=data["limit_message"],
            plan_buttons=tuple(ButtonConfig.from_dict(b) for b in data.get("plan_buttons", [])),
            explore_button=ButtonConfig.from_dict(data["explore_button"]),
            clinic_button=ButtonConfig.from_dict(data["clinic_button"]),
            footer=data.get("footer", ""),
            footer_tiers=tuple(data.get("footer_tiers", ["free", "PAYG"])),
        )


@dataclass(frozen=True)
class PromptConfig:
    persona: str
    tier_instructions: Dict[str, str]
    locale_instructions: LocalizedText
    greeting: LocalizedText
    failure_message: LocalizedText
    acknowledgement_fallback: LocalizedText = ""

    @classmethod
    def from_dict(cls, data: dict) -> "PromptConfig":
        return cls(
            persona=data["persona"],
            tier_instructions=dict(data.get("tier_instructions", {})),
            locale_instructions=data.get("locale_instructions", ""),
            greeting=data.get("greeting", ""),
            failure_message=data["failure_message"],
            acknowledgement_fallback=data.get("acknowledgement_fallback", ""),
        )


@dataclass(frozen=True)
class RulesConfig:
    """All business rules for the chat handler."""
    pillars: Tuple[PillarConfig, ...]
    crisis: CrisisConfig
    minor: MinorConfig
    welcome: WelcomeConfig
    upsell: UpsellConfig
    prompts: PromptConfig

    def get_pillar(self, name: str) -> Optional[PillarConfig]:
        for pillar in self.pillars:
            if pillar.name == name:
                return pillar
        return None

    @property
    def pillar_names(self) -> list[str]:
        return [pillar.name for pillar in self.pillars]

    @classmethod
    def from_dict(cls, data: dict) -> "RulesConfig":
        return cls(
            pillars=tuple(PillarConfig.from_dict(p) for p in data.get("pillars", [])),
            crisis=CrisisConfig.from_dict(data["crisis"]),
            minor=MinorConfig.from_dict(data["minor"]),
            welcome=WelcomeConfig.from_dict(data["welcome"]),
            upsell=UpsellConfig.from_dict(data["upsell"]),
            prompts=PromptConfig.from_dict(data["prompts"]),
        )
