from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

USER_MESSAGE_SCHEMA = "analyst.user_message.v1"
RESPONSE_BATCH_SCHEMA = "analyst.response_batch.v1"

CHART_TOOL_NAME = "render_chart"

InvocationStatus = Literal["requested", "executing", "completed", "failed"]
MessageRole = Literal["user", "model"]


def new_call_id() -> str:
    return f"call-{uuid.uuid4().hex[:9]}"


class ToolInvocation(BaseModel):
    # Unique within the model turn it came from, not across the conversation.
    id: str = Field(default_factory=new_call_id)
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    status: InvocationStatus = "requested"
    result: Any = None
    # Index of the model request (within one user message) that produced it.
    round: int = 0

    @field_validator("id", mode="before")
    @classmethod
    def _id_or_synthesized(cls, v: Any) -> str:
        s = "" if v is None else str(v).strip()
        return s or new_call_id()

    @field_validator("arguments", mode="before")
    @classmethod
    def _args_obj(cls, v: Any) -> Dict[str, Any]:
        return dict(v) if isinstance(v, dict) else {}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_chart(self) -> bool:
        return self.name == CHART_TOOL_NAME

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class TextDelta(BaseModel):
    kind: Literal["text"] = "text"
    text: str
    # Position within the stream. Producers must set it: the projector drops a
    # replayed (round, index), while deltas without an index are appended every
    # time they are seen.
    index: Optional[int] = None


class ToolCallRequested(BaseModel):
    kind: Literal["tool_call"] = "tool_call"
    invocation: ToolInvocation


StreamEvent = Union[TextDelta, ToolCallRequested]


class UserMessage(BaseModel):
    schema_version: Literal["analyst.user_message.v1"] = USER_MESSAGE_SCHEMA
    text: str


class ToolResponse(BaseModel):
    invocation_id: str
    name: str
    result: Any = None


class ResponseBatch(BaseModel):
    """
    Tool results submitted back to the model: one entry per requested invocation,
    in request order.
    """

    schema_version: Literal["analyst.response_batch.v1"] = RESPONSE_BATCH_SCHEMA
    responses: List[ToolResponse] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "ResponseBatch":
        seen = set()
        for r in self.responses:
            if r.invocation_id in seen:
                raise ValueError(f"duplicate invocation id in batch: {r.invocation_id}")
            seen.add(r.invocation_id)
        return self

    @classmethod
    def from_invocations(cls, invocations: List[ToolInvocation]) -> "ResponseBatch":
        return cls(
            responses=[ToolResponse(invocation_id=inv.id, name=inv.name, result=inv.result) for inv in invocations]
        )


ModelRequest = Union[UserMessage, ResponseBatch]


class TurnOutcome(BaseModel):
    ok: bool = True
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls) -> "TurnOutcome":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str, error_code: str = "unknown_error") -> "TurnOutcome":
        return cls(ok=False, error=error, error_code=error_code)


class ProjectedMessage(BaseModel):
    """UI-facing view of one message in the conversation."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: MessageRole
    text: str = ""
    tool_invocations: List[ToolInvocation] = Field(default_factory=list)
    is_loading: bool = False
    timestamp: float = Field(default_factory=time.time)
    error_code: Optional[str] = None
