from typing import Optional

from pydantic import BaseModel


class RoutingModeUpdate(BaseModel):
    # Plain str so unknown modes get a 400 from the route, not a 422.
    mode: str


class BudgetProfileUpdate(BaseModel):
    profile: Optional[str] = None


class CompletionBody(BaseModel):
    messages: list[dict]
    session_id: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096


class CompletionResponse(BaseModel):
    content: str
    model: str
    provider: str
    tokens_used: int
    finish_reason: Optional[str] = None
