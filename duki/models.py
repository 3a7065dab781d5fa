from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class AskRequest(BaseModel):
    """Request payload for the ask API. Accepts the widget's camelCase keys too."""
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    question: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    is_first_turn: bool = Field(default=False, alias="isFirstTurn")
    page_hints: Dict[str, str] = Field(default_factory=dict, alias="pageHints")

    def text(self) -> str:
        return (self.message or self.question or "").strip()


class Citation(BaseModel):
    """Numbered context block reference returned with grounded answers."""
    idx: int
    id: str
    score: float


class AskResponse(BaseModel):
    """Response payload returned by the ask API."""
    answer: str
    mode: str
    bot: str
    intent: str
    citations: List[Citation] = Field(default_factory=list)
    session_id: str


class SessionTurn(BaseModel):
    """One stored conversation turn."""
    timestamp: float
    role: Literal["user", "assistant"]
    text: str


class UserFact(BaseModel):
    """Explicit, user-confirmed personalization datum."""
    key: str
    value: str
    source: str = "user"
    added_at: float


class SessionView(BaseModel):
    """Inspection payload for the session debug endpoint."""
    ok: bool = True
    bot: str
    session_id: str
    history_length: int
    messages: List[SessionTurn]
    preview: List[SessionTurn]


class ResetResponse(BaseModel):
    ok: bool = True
    bot: str
    session_id: str
    message: str


class ResetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
