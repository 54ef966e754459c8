"""Prompt assembly for completion calls, with a token budget on history."""

import logging
from dataclasses import dataclass
from typing import Optional, List

import tiktoken

from abeai.config import get_settings
from abeai.core.config_types import PillarConfig, RulesConfig
from abeai.core.i18n import get_localized
from abeai.schemas.session import SessionRecord

logger = logging.getLogger(__name__)

# Use cl100k_base encoding (GPT-4 tokenizer)
_encoding = tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count tokens in a text string."""
    return len(_encoding.encode(text))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Truncate text to fit within token limit."""
    tokens = _encoding.encode(text)
    if len(tokens) <= max_tokens:
        return text
    return _encoding.decode(tokens[:max_tokens])


@dataclass
class AssembledPrompt:
    """Everything needed for one completion call."""

    system_prompt: str
    messages: List[dict]  # history slice followed by the current user message
    model: str
    temperature: float
    max_tokens: int
    token_counts: dict[str, int]


class PromptBuilder:
    """Builds the role-tagged message list for a user's question."""

    def __init__(self, rules: RulesConfig):
        self.rules = rules
        self.settings = get_settings()

    def build(
        self,
        record: SessionRecord,
        user_message: str,
        pillar: Optional[PillarConfig],
        locale: str,
    ) -> AssembledPrompt:
        """
        Assemble system prompt, bounded history and the current message.

        Args:
            record: The caller's session record (tier, safety notes, history)
            user_message: The question being answered
            pillar: Detected topic pillar, if any
            locale: Copy variant ("default" or "au")
        """
        sections = [
            self.rules.prompts.persona,
            self._build_user_section(record, pillar, locale),
        ]
        system_prompt = "\n\n".join(section for section in sections if section)

        history = self._history_slice(record)
        messages = history + [{"role": "user", "content": user_message}]

        token_counts = {
            "system_prompt": count_tokens(system_prompt),
            "history": sum(count_tokens(m["content"]) for m in history),
            "user_message": count_tokens(user_message),
        }

        tier = record.tier.value
        return AssembledPrompt(
            system_prompt=system_prompt,
            messages=messages,
            model=self.settings.model_for(tier),
            temperature=self.settings.default_temperature,
            max_tokens=self.settings.max_tokens_for(tier),
            token_counts=token_counts,
        )

    def _build_user_section(
        self,
        record: SessionRecord,
        pillar: Optional[PillarConfig],
        locale: str,
    ) -> str:
        prompts = self.rules.prompts
        lines = ["## User context"]

        if pillar:
            lines.append(f"Topic: {pillar.name}")

        for configured in self.rules.pillars:
            note = record.safety_context.get(configured.name)
            label = configured.context_label
            lines.append(f"{label}: {note if note else 'not provided'}")

        profile = record.profile
        if profile.fitness_level:
            lines.append(f"Fitness level: {profile.fitness_level}")
        if profile.motivation_level:
            lines.append(f"Motivation: {profile.motivation_level}")
        if profile.age:
            lines.append(f"Age: {profile.age}")

        lines.append(f"Subscription tier: {record.tier.value}")
        lines.append("")
        lines.append("## Response style")

        tier_instruction = prompts.tier_instructions.get(record.tier.value)
        if tier_instruction:
            lines.append(tier_instruction)
        locale_instruction = get_localized(prompts.locale_instructions, locale)
        if locale_instruction:
            lines.append(locale_instruction)

        return "\n".join(lines)

    def _history_slice(self, record: SessionRecord) -> List[dict]:
        """Most recent history entries that fit the message count and token budget."""
        window = self.settings.prompt_history_messages
        if window <= 0:
            return []

        recent = record.conversation_history[-window:]
        budget = self.settings.token_budget_history
        selected: List[dict] = []

        # Walk newest to oldest so the latest exchange is kept first
        for entry in reversed(recent):
            tokens = count_tokens(entry.content)
            if tokens > budget:
                logger.debug(
                    f"History budget exhausted after {len(selected)} of {len(recent)} messages"
                )
                if not selected and budget > 0:
                    selected.append({
                        "role": entry.role,
                        "content": truncate_to_tokens(entry.content, budget),
                    })
                break
            selected.append(entry.to_message())
            budget -= tokens

        selected.reverse()
        return selected
