from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from homedash.core.models import Notice


class AppState(BaseModel):
    started: bool
    view: str
    pending: int
    notices: int


class ActionAccepted(BaseModel):
    target_id: str
    kind: str
    pending: bool


class JobRequest(BaseModel):
    workflow: Dict[str, Any] = Field(default_factory=dict)


class TerminalInput(BaseModel):
    line: Optional[str] = None


class TerminalState(BaseModel):
    sent: bool
    pending_input: str
    history: List[str]


class NoticeList(BaseModel):
    notices: List[Notice]
