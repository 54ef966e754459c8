"""Pydantic models for the per-user/session record kept in the key-value store."""

from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Subscription tiers, lowest to highest."""
    FREE = "free"
    PAYG = "PAYG"
    ESSENTIALS = "Essentials"
    PREMIUM = "Premium"
    CLINICAL = "Clinical"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Tier"]:
        """Case-insensitive lookup; None for unknown values."""
        if not value:
            return None
        for tier in cls:
            if tier.value.lower() == value.strip().lower():
                return tier
        return None


class ConversationState(str, Enum):
    """Where the record is in the safety interview.

    IDLE: nothing asked or answered yet
    AWAITING_SAFETY_ANSWER: a pillar's safety question is outstanding and the
        next inbound message is its answer
    NORMAL: regular question/answer exchanges
    """
    IDLE = "idle"
    AWAITING_SAFETY_ANSWER = "awaiting_safety_answer"
    NORMAL = "normal"


class PendingSafetyQuestion(BaseModel):
    """The outstanding safety question and the request it interrupted."""

    pillar: str
    original_message: str = ""
    asked_at: datetime = Field(default_factory=datetime.utcnow)


class HistoryEntry(BaseModel):
    """A single role-tagged message in the conversation history."""

    role: str
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_message(self) -> dict:
        """Convert to the completion API message format."""
        return {"role": self.role, "content": self.content}


class UserProfile(BaseModel):
    """Caller-supplied facts used to personalise the prompt."""

    age: Optional[int] = None
    fitness_level: Optional[str] = None
    motivation_level: Optional[str] = None


class SessionRecord(BaseModel):
    """Everything remembered about one user or browser session."""

    tier: Tier = Tier.FREE
    usage_count: int = 0
    safety_context: dict[str, Optional[str]] = Field(default_factory=dict)
    state: ConversationState = ConversationState.IDLE
    pending: Optional[PendingSafetyQuestion] = None
    conversation_history: List[HistoryEntry] = Field(default_factory=list)
    is_australian: bool = False
    offered_diary_prompt: dict[str, bool] = Field(default_factory=dict)
    profile: UserProfile = Field(default_factory=UserProfile)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Store version this record was read at; not part of the stored blob
    version: int = Field(default=0, exclude=True)

    @property
    def awaiting_safety_answer(self) -> bool:
        return self.state == ConversationState.AWAITING_SAFETY_ANSWER and self.pending is not None

    def has_safety_context(self, pillar: str) -> bool:
        return bool(self.safety_context.get(pillar))

    def record_safety_answer(self, pillar: str, answer: str) -> bool:
        """Store a pillar's safety context unless it was already answered."""
        if self.has_safety_context(pillar):
            return False
        self.safety_context[pillar] = answer.strip()
        return True

    def begin_safety_question(self, pillar: str, original_message: str) -> None:
        self.state = ConversationState.AWAITING_SAFETY_ANSWER
        self.pending = PendingSafetyQuestion(pillar=pillar, original_message=original_message)

    def clear_pending(self) -> None:
        self.state = ConversationState.NORMAL
        self.pending = None

    def append_history(self, role: str, content: str, limit: int) -> None:
        """Append a message, evicting the oldest entries beyond the limit."""
        self.conversation_history.append(HistoryEntry(role=role, content=content))
        if limit >= 0 and len(self.conversation_history) > limit:
            self.conversation_history = self.conversation_history[-limit:] if limit else []

    def to_store(self) -> dict:
        """Serialise to the JSON blob kept in the key-value store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_store(cls, value: Optional[dict], version: int = 0) -> "SessionRecord":
        """Build a record from a stored blob; a missing blob means a new user."""
        record = cls.model_validate(value or {})
        record.version = version
        return record
