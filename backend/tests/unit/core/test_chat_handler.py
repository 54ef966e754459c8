"""Unit tests for the ChatHandler rule pipeline."""

import pytest
from sqlalchemy.exc import OperationalError

from abeai.core.chat_handler import ChatHandler, ContextOverrides, Outcome
from abeai.core.identity import Identity
from abeai.core.kv_store import KeyValueStore, StaleWriteError
from abeai.core.llm_client import LLMError
from abeai.core.state_manager import StateManager
from abeai.schemas.session import ConversationState, SessionRecord, Tier

ALICE = Identity(identifier="alice", kind="user")


@pytest.fixture
def handler(db_session, mock_llm_client, rules):
    return ChatHandler(db_session, llm_client=mock_llm_client, rules=rules)


async def _seed(db_session, identity, record):
    """Store a record as if earlier requests had built it up."""
    await KeyValueStore(db_session).put(identity.key, record.to_store())
    await db_session.commit()


async def _load(db_session, identity):
    return await StateManager(db_session).load(identity.key)


class TestCrisisAndMinors:
    """Safety overrides never reach the model or the store."""

    @pytest.mark.asyncio
    async def test_self_harm_bypasses_everything(self, handler, db_session, mock_llm_client):
        result = await handler.handle_message("I want to kill myself", ALICE)

        assert result.outcome == Outcome.SELF_HARM
        assert not result.llm_called
        assert mock_llm_client.calls == []
        assert await KeyValueStore(db_session).get(ALICE.key) is None

    @pytest.mark.asyncio
    async def test_crisis_wins_over_exhausted_free_tier(self, handler, db_session):
        await _seed(db_session, ALICE, SessionRecord(usage_count=3))

        result = await handler.handle_message("I've been purging after meals", ALICE)

        assert result.outcome == Outcome.DISORDERED_EATING
        assert result.buttons == []
        assert (await _load(db_session, ALICE)).usage_count == 3

    @pytest.mark.asyncio
    async def test_crisis_wins_over_pending_safety_question(self, handler, db_session):
        record = SessionRecord()
        record.begin_safety_question("nutrition", "What should I eat?")
        await _seed(db_session, ALICE, record)

        result = await handler.handle_message("honestly I want to die", ALICE)

        assert result.outcome == Outcome.SELF_HARM
        assert (await _load(db_session, ALICE)).awaiting_safety_answer

    @pytest.mark.asyncio
    async def test_australian_crisis_copy_from_geo_header(self, handler):
        result = await handler.handle_message("I want to end my life", ALICE, country="AU")

        assert "13 11 14" in result.response

    @pytest.mark.asyncio
    async def test_minor_refused(self, handler, mock_llm_client):
        result = await handler.handle_message("I'm 15 years old, how do I lose weight?", ALICE)

        assert result.outcome == Outcome.MINOR
        assert mock_llm_client.calls == []

    @pytest.mark.asyncio
    async def test_minor_from_context_age(self, handler, mock_llm_client):
        result = await handler.handle_message(
            "Any tips for today?", ALICE, context=ContextOverrides(age=14)
        )

        assert result.outcome == Outcome.MINOR
        assert mock_llm_client.calls == []


class TestWelcome:

    @pytest.mark.asyncio
    async def test_welcome_intro(self, handler, mock_llm_client, rules):
        result = await handler.handle_message("welcome", ALICE)

        assert result.outcome == Outcome.WELCOME
        assert result.pillar == "mental"
        assert result.response == rules.welcome.message
        assert mock_llm_client.calls == []


class TestSafetyQuestions:
    """The one-time per-pillar safety interview."""

    @pytest.mark.asyncio
    async def test_first_pillar_message_asks_safety_question(
        self, handler, db_session, mock_llm_client, rules
    ):
        result = await handler.handle_message("What should I eat for breakfast?", ALICE)

        assert result.outcome == Outcome.SAFETY_QUESTION
        assert result.pillar == "nutrition"
        assert result.request_context == "allergies"
        assert result.response == rules.get_pillar("nutrition").safety_question
        assert mock_llm_client.calls == []

        record = await _load(db_session, ALICE)
        assert record.state == ConversationState.AWAITING_SAFETY_ANSWER
        assert record.pending.pillar == "nutrition"
        assert record.pending.original_message == "What should I eat for breakfast?"
        assert record.usage_count == 0

    @pytest.mark.asyncio
    async def test_answer_is_stored_and_question_replayed(
        self, handler, db_session, mock_llm_client
    ):
        mock_llm_client.add_text_response("Try oats with berries.")
        await handler.handle_message("What should I eat for breakfast?", ALICE)

        result = await handler.handle_message("I'm allergic to peanuts", ALICE)

        assert result.outcome == Outcome.ANSWERED
        assert result.pillar == "nutrition"
        assert result.response.startswith("Try oats with berries.")
        call = mock_llm_client.calls[0]
        assert call["messages"][-1]["content"] == "What should I eat for breakfast?"
        assert "allergies: I'm allergic to peanuts" in call["system_prompt"]

        record = await _load(db_session, ALICE)
        assert record.safety_context["nutrition"] == "I'm allergic to peanuts"
        assert not record.awaiting_safety_answer
        assert [e.content for e in record.conversation_history] == [
            "What should I eat for breakfast?",
            "Try oats with berries.",
        ]
        assert record.usage_count == 1

    @pytest.mark.asyncio
    async def test_safety_question_is_never_asked_twice(self, handler, mock_llm_client):
        await handler.handle_message("What should I eat for breakfast?", ALICE)
        await handler.handle_message("No allergies", ALICE)

        result = await handler.handle_message("Any good snack ideas?", ALICE)

        assert result.outcome == Outcome.ANSWERED
        assert len(mock_llm_client.calls) == 2

    @pytest.mark.asyncio
    async def test_each_pillar_asks_its_own_question(self, handler, rules):
        await handler.handle_message("What should I eat for breakfast?", ALICE)
        await handler.handle_message("No allergies", ALICE)

        result = await handler.handle_message("How do I start at the gym?", ALICE)

        assert result.outcome == Outcome.SAFETY_QUESTION
        assert result.pillar == "activity"
        assert result.request_context == "injuries"

    @pytest.mark.asyncio
    async def test_context_override_skips_question(self, handler, db_session):
        result = await handler.handle_message(
            "What should I eat for breakfast?",
            ALICE,
            context=ContextOverrides(allergies="shellfish"),
        )

        assert result.outcome == Outcome.ANSWERED
        record = await _load(db_session, ALICE)
        assert record.safety_context["nutrition"] == "shellfish"

    @pytest.mark.asyncio
    async def test_unknown_pending_pillar_is_acknowledged(self, handler, db_session, rules):
        record = SessionRecord()
        record.begin_safety_question("sleep", "")
        await _seed(db_session, ALICE, record)

        result = await handler.handle_message("none", ALICE)

        assert result.outcome == Outcome.ACKNOWLEDGED
        assert result.response == rules.prompts.acknowledgement_fallback
        assert not (await _load(db_session, ALICE)).awaiting_safety_answer


class TestMonetization:
    """Free-tier limit and upsell footer."""

    @pytest.mark.asyncio
    async def test_limit_after_three_answers(self, handler, db_session, mock_llm_client):
        for _ in range(3):
            result = await handler.handle_message("Any tips for today?", ALICE)
            assert result.outcome == Outcome.ANSWERED

        result = await handler.handle_message("Any tips for today?", ALICE)

        assert result.outcome == Outcome.UPSELL
        assert result.response.startswith("You've reached your free limit.")
        assert result.upgrade_suggested
        assert len(mock_llm_client.calls) == 3
        assert (await _load(db_session, ALICE)).usage_count == 3

    @pytest.mark.asyncio
    async def test_limit_message_for_nutrition_question(self, handler, db_session):
        """Free user with the allergy question answered, limit used up."""
        await _seed(db_session, ALICE, SessionRecord(
            usage_count=3, safety_context={"nutrition": "none"}
        ))

        result = await handler.handle_message("What should I eat for breakfast?", ALICE)

        assert result.outcome == Outcome.UPSELL
        assert [b["text"] for b in result.buttons] == ["PAYG", "Essentials Plan", "Premium Plan"]

    @pytest.mark.asyncio
    async def test_australian_limit_buttons(self, handler, db_session):
        await _seed(db_session, ALICE, SessionRecord(usage_count=3, is_australian=True))

        result = await handler.handle_message("Any tips for today?", ALICE)

        texts = [b["text"] for b in result.buttons]
        assert "Clinical Plan (AU)" in texts
        assert "Book with Downscale Clinics (AU)" in texts

    @pytest.mark.asyncio
    async def test_paid_tier_not_counted(self, handler, db_session, mock_llm_client):
        for _ in range(5):
            result = await handler.handle_message("Any tips for today?", ALICE, tier=Tier.PREMIUM)
            assert result.outcome == Outcome.ANSWERED
            assert result.buttons == []

        record = await _load(db_session, ALICE)
        assert record.tier == Tier.PREMIUM
        assert record.usage_count == 0

    @pytest.mark.asyncio
    async def test_free_answer_has_footer_and_support_button(self, handler, rules):
        result = await handler.handle_message(
            "Any good protein snacks?", ALICE, context=ContextOverrides(allergies="none")
        )

        assert result.response.endswith(rules.upsell.footer["default"])
        assert [b["text"] for b in result.buttons] == ["Nutrition Support"]


class TestPersonalization:

    @pytest.mark.asyncio
    async def test_australian_greeting_on_first_answer_only(self, handler):
        first = await handler.handle_message("Any tips for today?", ALICE, country="AU")
        second = await handler.handle_message("And for tomorrow?", ALICE, country="au")

        assert first.response.startswith("G'day! ")
        assert not second.response.startswith("G'day! ")

    @pytest.mark.asyncio
    async def test_diary_prompt_offered_once_per_pillar(self, handler, rules):
        diary = rules.get_pillar("activity").diary_prompt
        context = ContextOverrides(injuries="none")

        first = await handler.handle_message("Is walking enough exercise?", ALICE, context=context)
        second = await handler.handle_message("How about yoga?", ALICE, tier=Tier.PAYG)

        assert diary in first.response
        assert diary not in second.response

    @pytest.mark.asyncio
    async def test_history_stores_plain_answer(self, handler, db_session, mock_llm_client):
        mock_llm_client.add_text_response("Go for a walk.")
        await handler.handle_message("Any tips for today?", ALICE, country="AU")

        record = await _load(db_session, ALICE)
        assert record.conversation_history[-1].content == "Go for a walk."
        assert record.is_australian

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, handler, db_session):
        for i in range(6):
            await handler.handle_message(f"Tip number {i}?", ALICE, tier=Tier.CLINICAL)

        record = await _load(db_session, ALICE)
        assert len(record.conversation_history) == 10
        assert record.conversation_history[0].content == "Tip number 1?"


class TestFailures:

    @pytest.mark.asyncio
    async def test_llm_failure_returns_apology_without_usage(
        self, handler, db_session, mock_llm_client, rules
    ):
        mock_llm_client.fail_with(LLMError("OpenAI API error: 503", 503))

        result = await handler.handle_message("Any tips for today?", ALICE)

        assert result.outcome == Outcome.FAILED
        assert result.response == rules.prompts.failure_message
        record = await _load(db_session, ALICE)
        assert record.usage_count == 0
        assert record.conversation_history == []

    @pytest.mark.asyncio
    async def test_store_failure_returns_apology(self, handler, mock_llm_client, monkeypatch):
        async def broken_load(key):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(handler.state_manager, "load", broken_load)

        result = await handler.handle_message("Any tips for today?", ALICE)

        assert result.outcome == Outcome.FAILED
        assert mock_llm_client.calls == []

    @pytest.mark.asyncio
    async def test_lost_write_race_returns_apology(self, handler, db_session, rules, monkeypatch):
        async def conflicting_commit(key, record, changes):
            raise StaleWriteError(key, record.version)

        monkeypatch.setattr(handler.state_manager, "commit", conflicting_commit)

        result = await handler.handle_message("Any tips for today?", ALICE)

        assert result.outcome == Outcome.FAILED
        assert result.response == rules.prompts.failure_message
        assert await KeyValueStore(db_session).get(ALICE.key) is None
