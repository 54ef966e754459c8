"""Chat request handler: safety, monetization and personalization rules around the LLM."""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, List

from openai import OpenAIError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abeai.config import get_settings
from abeai.core.config_loader import get_rules
from abeai.core.config_types import PillarConfig, RulesConfig
from abeai.core.i18n import DEFAULT_LOCALE, get_localized, locale_for
from abeai.core.identity import Identity
from abeai.core.kv_store import StaleWriteError
from abeai.core.llm_client import LLMClient, LLMError, get_llm_client
from abeai.core.monetization import (
    counts_usage,
    limit_message,
    limit_reached,
    soft_upsell,
    upgrade_buttons,
)
from abeai.core.pillars import detect_pillar, is_welcome
from abeai.core.prompt_builder import PromptBuilder
from abeai.core.safety import check_minor, scan_crisis
from abeai.core.state_manager import RecordChanges, StateManager
from abeai.schemas.session import SessionRecord, Tier

logger = logging.getLogger(__name__)


class Outcome:
    """How a request was answered."""
    SELF_HARM = "self_harm"
    DISORDERED_EATING = "disordered_eating"
    MINOR = "minor"
    WELCOME = "welcome"
    SAFETY_QUESTION = "safety_question"
    ACKNOWLEDGED = "acknowledged"
    UPSELL = "upsell"
    ANSWERED = "answered"
    FAILED = "failed"


@dataclass
class ContextOverrides:
    """Caller-supplied context that updates the stored record."""
    allergies: Optional[str] = None
    injuries: Optional[str] = None
    medications: Optional[str] = None
    mental_health: Optional[str] = None
    fitness_level: Optional[str] = None
    motivation_level: Optional[str] = None
    age: Optional[int] = None
    is_australian: Optional[bool] = None

    def safety_notes(self) -> dict[str, str]:
        """Notes keyed by pillar context label."""
        notes = {
            "allergies": self.allergies,
            "injuries": self.injuries,
            "medications": self.medications,
            "mentalHealth": self.mental_health,
        }
        return {label: note.strip() for label, note in notes.items() if note and note.strip()}


@dataclass
class ChatResult:
    """Response from the chat handler."""

    response: str
    outcome: str
    buttons: List[dict] = field(default_factory=list)
    pillar: Optional[str] = None
    request_context: Optional[str] = None
    llm_called: bool = False
    processing_time_ms: Optional[int] = None

    @property
    def upgrade_suggested(self) -> bool:
        return bool(self.buttons)


class ChatHandler:
    """Runs one inbound chat message through the rule pipeline."""

    def __init__(
        self,
        db: AsyncSession,
        llm_client: Optional[LLMClient] = None,
        rules: Optional[RulesConfig] = None,
    ):
        self.db = db
        self.llm_client = llm_client or get_llm_client()
        self.rules = rules or get_rules()
        self.settings = get_settings()
        self.state_manager = StateManager(db)
        self.prompt_builder = PromptBuilder(self.rules)

    async def handle_message(
        self,
        user_message: str,
        identity: Identity,
        tier: Optional[Tier] = None,
        context: Optional[ContextOverrides] = None,
        country: Optional[str] = None,
    ) -> ChatResult:
        """
        Handle a user message.

        Order (each step may answer and stop):
        1. Load the record and apply request overrides
        2. Crisis phrases, then the under-18 gate
        3. Welcome trigger
        4. Pending safety answer: store it and replay the stashed question
        5. Pillar safety question for unanswered pillars
        6. Free-tier limit
        7. Prompt assembly, completion call, post-processing and commit
        """
        start_time = time.time()
        try:
            result = await self._handle(user_message, identity, tier, context, country)
        except (SQLAlchemyError, StaleWriteError) as e:
            logger.error(f"Key-value store error for {identity.key}: {e}")
            await self.db.rollback()
            result = self._failure(DEFAULT_LOCALE)
        result.processing_time_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"{identity.key}: outcome={result.outcome} pillar={result.pillar} "
            f"llm={result.llm_called} in {result.processing_time_ms}ms"
        )
        return result

    async def _handle(
        self,
        user_message: str,
        identity: Identity,
        tier: Optional[Tier],
        context: Optional[ContextOverrides],
        country: Optional[str],
    ) -> ChatResult:
        rules = self.rules

        record = await self.state_manager.load(identity.key)

        changes = RecordChanges()
        self._apply_overrides(record, changes, tier, context, country)
        locale = locale_for(record.is_australian)

        # Safety-critical content always wins and never touches state
        override = scan_crisis(user_message, rules, locale)
        if override is None:
            override = check_minor(user_message, rules, locale, record.profile.age)
        if override is not None:
            logger.info(f"{identity.key}: safety override ({override.category.value})")
            return ChatResult(response=override.response, outcome=override.category.value)

        if is_welcome(user_message, rules):
            await self._persist(identity, record, changes)
            return ChatResult(
                response=get_localized(rules.welcome.message, locale),
                outcome=Outcome.WELCOME,
                pillar=rules.welcome.pillar,
            )

        question = user_message
        if record.awaiting_safety_answer:
            pending = record.pending
            pillar = rules.get_pillar(pending.pillar)
            answer = user_message

            def store_answer(r: SessionRecord) -> None:
                r.record_safety_answer(pending.pillar, answer)
                r.clear_pending()

            changes.apply(record, store_answer)
            logger.info(f"{identity.key}: stored safety context for {pending.pillar}")

            if pillar is None or not pending.original_message.strip():
                await self._persist(identity, record, changes)
                acknowledgement = pillar.acknowledgement if pillar else ""
                return ChatResult(
                    response=get_localized(acknowledgement, locale)
                    or get_localized(rules.prompts.acknowledgement_fallback, locale),
                    outcome=Outcome.ACKNOWLEDGED,
                    pillar=pending.pillar,
                )
            question = pending.original_message
        else:
            pillar = detect_pillar(user_message, rules)
            if pillar and not record.has_safety_context(pillar.name):
                changes.apply(
                    record,
                    lambda r: r.begin_safety_question(pillar.name, user_message),
                )
                await self._persist(identity, record, changes)
                return ChatResult(
                    response=get_localized(pillar.safety_question, locale),
                    outcome=Outcome.SAFETY_QUESTION,
                    pillar=pillar.name,
                    request_context=pillar.context_label,
                )

        if limit_reached(record):
            await self._persist(identity, record, changes)
            return ChatResult(
                response=limit_message(rules, locale),
                outcome=Outcome.UPSELL,
                buttons=upgrade_buttons(rules, record),
                pillar=pillar.name if pillar else None,
            )

        return await self._answer(identity, record, changes, question, pillar, locale)

    async def _answer(
        self,
        identity: Identity,
        record: SessionRecord,
        changes: RecordChanges,
        question: str,
        pillar: Optional[PillarConfig],
        locale: str,
    ) -> ChatResult:
        """Call the model and commit the exchange."""
        prompts = self.rules.prompts
        prompt = self.prompt_builder.build(record, question, pillar, locale)
        logger.debug(f"{identity.key}: prompt token counts {prompt.token_counts}")

        try:
            llm_response = await self.llm_client.complete(
                system_prompt=prompt.system_prompt,
                messages=prompt.messages,
                model=prompt.model,
                temperature=prompt.temperature,
                max_tokens=prompt.max_tokens,
            )
        except (LLMError, OpenAIError) as e:
            logger.error(f"LLM error for {identity.key}: {e}")
            await self._persist(identity, record, changes)
            result = self._failure(locale)
            result.llm_called = True
            result.pillar = pillar.name if pillar else None
            return result

        answer = llm_response.text
        reply = answer

        first_reply = not any(entry.role == "assistant" for entry in record.conversation_history)
        greeting = get_localized(prompts.greeting, locale)
        if first_reply and greeting:
            reply = f"{greeting}{reply}"

        if pillar and pillar.diary_prompt and not record.offered_diary_prompt.get(pillar.name):
            reply = f"{reply}\n\n{get_localized(pillar.diary_prompt, locale)}"
            pillar_name = pillar.name

            def mark_diary_offered(r: SessionRecord) -> None:
                r.offered_diary_prompt[pillar_name] = True

            changes.apply(record, mark_diary_offered)

        footer, buttons = soft_upsell(self.rules, record, pillar, locale)
        if footer:
            reply = f"{reply}\n\n{footer}"

        history_limit = self.settings.history_limit

        def commit_exchange(r: SessionRecord) -> None:
            r.append_history("user", question, history_limit)
            r.append_history("assistant", answer, history_limit)
            if counts_usage(r):
                r.usage_count += 1

        changes.apply(record, commit_exchange)
        await self._persist(identity, record, changes)

        return ChatResult(
            response=reply,
            outcome=Outcome.ANSWERED,
            buttons=buttons,
            pillar=pillar.name if pillar else None,
            llm_called=True,
        )

    def _apply_overrides(
        self,
        record: SessionRecord,
        changes: RecordChanges,
        tier: Optional[Tier],
        context: Optional[ContextOverrides],
        country: Optional[str],
    ) -> None:
        """Fold request-supplied tier, context and geolocation into the record."""
        if tier is not None and tier != record.tier:
            changes.apply(record, lambda r: setattr(r, "tier", tier))

        is_australian = None
        if country:
            is_australian = country.strip().upper() == "AU"
        if context and context.is_australian is not None:
            is_australian = context.is_australian
        if is_australian is not None and is_australian != record.is_australian:
            changes.apply(record, lambda r: setattr(r, "is_australian", is_australian))

        if not context:
            return

        for label, note in context.safety_notes().items():
            for pillar in self.rules.pillars:
                if pillar.context_label == label and not record.has_safety_context(pillar.name):
                    name = pillar.name
                    changes.apply(record, lambda r, n=name, v=note: r.record_safety_answer(n, v))

        profile_updates = {
            key: value
            for key, value in (
                ("age", context.age),
                ("fitness_level", context.fitness_level),
                ("motivation_level", context.motivation_level),
            )
            if value is not None and getattr(record.profile, key) != value
        }
        if profile_updates:
            def update_profile(r: SessionRecord) -> None:
                for key, value in profile_updates.items():
                    setattr(r.profile, key, value)

            changes.apply(record, update_profile)

    async def _persist(
        self,
        identity: Identity,
        record: SessionRecord,
        changes: RecordChanges,
    ) -> None:
        """Commit pending changes. Nothing to write for an unchanged stored record."""
        if not changes and record.version:
            return
        await self.state_manager.commit(identity.key, record, changes)

    def _failure(self, locale: str) -> ChatResult:
        return ChatResult(
            response=get_localized(self.rules.prompts.failure_message, locale),
            outcome=Outcome.FAILED,
        )
