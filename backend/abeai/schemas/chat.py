"""Pydantic schemas for chat API requests and responses."""

from typing import Optional, List, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _join_notes(value):
    """Accept either a list of notes or a single string."""
    if isinstance(value, (list, tuple)):
        joined = ", ".join(str(item).strip() for item in value if str(item).strip())
        return joined or None
    return value


class UserContextIn(BaseModel):
    """Optional context supplied by the widget."""

    model_config = ConfigDict(populate_by_name=True)

    allergies: Optional[Union[str, List[str]]] = None
    injuries: Optional[Union[str, List[str]]] = None
    medications: Optional[Union[str, List[str]]] = None
    mental_health: Optional[str] = Field(
        None, validation_alias=AliasChoices("mental_health", "mentalHealth")
    )
    fitness_level: Optional[str] = Field(
        None, validation_alias=AliasChoices("fitness_level", "fitnessLevel")
    )
    motivation_level: Optional[str] = Field(
        None, validation_alias=AliasChoices("motivation_level", "motivationLevel")
    )
    age: Optional[int] = Field(None, ge=0, le=130)
    is_australian: Optional[bool] = Field(
        None, validation_alias=AliasChoices("is_australian", "isAustralian")
    )

    @field_validator("allergies", "injuries", "medications", mode="before")
    @classmethod
    def join_lists(cls, value):
        return _join_notes(value)


class ChatMessageRequest(BaseModel):
    """Request to send a chat message."""

    message: str = Field(..., description="User's message content")
    user_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("user_id", "userId"),
        description="Stable user identifier. Falls back to session_id, then the session cookie.",
    )
    session_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("session_id", "sessionId"),
        description="Session identifier issued by a previous response.",
    )
    tier: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("tier", "subscription_tier"),
        description="Subscription tier: free, PAYG, Essentials, Premium or Clinical.",
    )
    context: Optional[UserContextIn] = Field(
        None,
        validation_alias=AliasChoices("context", "user_context"),
        description="Allergies, fitness level, age and market flags.",
    )

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value.strip()


class UpgradeButton(BaseModel):
    """A link button rendered under the response."""

    text: str
    url: str


class ChatMessageResponse(BaseModel):
    """Response from the chat endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    response: str = Field(..., description="Assistant's response message")
    buttons: List[UpgradeButton] = Field(default_factory=list)
    upgrade_suggested: bool = Field(False, serialization_alias="upgradeSuggested")
    session_id: Optional[str] = Field(
        None,
        serialization_alias="sessionId",
        description="Present when a new session was created for this request",
    )
    pillar: Optional[str] = Field(None, description="Detected topic pillar")
    request_context: Optional[str] = Field(
        None,
        serialization_alias="requestContext",
        description="Context the assistant is asking for (set with a safety question)",
    )


class ErrorResponse(BaseModel):
    """Body returned for malformed requests."""

    response: str
    error: str
