"""Envelope definitions for the bridge protocol.

Three wire shapes travel in both directions:
- Call (tag "S"): synchronous request, carries an id for correlation
- Notify (tag "A"): fire-and-forget request, no id, no response
- Response (tag "R"): answer to a prior Call, carries the Call's id

A Call sent by the host is answered by the worker and vice versa; the
meaning of an id is local to the side that allocated it.

Example (call):
    {"tag": "S", "id": 0, "module": "math", "function": "add", "args": [2, 3]}

Example (response):
    {"tag": "R", "id": 0, "result": {"status": "ok", "value": 5}}

Example (failed response):
    {
        "tag": "R",
        "id": 1,
        "result": {
            "status": "error",
            "category": "ZeroDivisionError",
            "reason": "division by zero",
            "trace": "Traceback (most recent call last): ..."
        }
    }
"""

from __future__ import annotations

import traceback
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class Success(BaseModel):
    """Successful outcome of a call."""

    status: Literal["ok"] = "ok"
    value: Any = None


class Failure(BaseModel):
    """Failed outcome of a call.

    `category` is the exception class name, `reason` its message and
    `trace` the formatted traceback from the side that ran the function.
    """

    status: Literal["error"] = "error"
    category: str
    reason: str = ""
    trace: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> Failure:
        """Build a failure from a raised exception."""
        return cls(
            category=type(exc).__name__,
            reason=str(exc),
            trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )


Result = Annotated[Success | Failure, Field(discriminator="status")]


class CallEnvelope(BaseModel):
    """A synchronous request expecting exactly one Response."""

    tag: Literal["S"] = "S"
    id: int = Field(ge=0)
    module: str
    function: str
    args: list[Any] = Field(default_factory=list)

    @property
    def target(self) -> str:
        return f"{self.module}.{self.function}"


class NotifyEnvelope(BaseModel):
    """A fire-and-forget request."""

    tag: Literal["A"] = "A"
    module: str
    function: str
    args: list[Any] = Field(default_factory=list)

    @property
    def target(self) -> str:
        return f"{self.module}.{self.function}"


class ResponseEnvelope(BaseModel):
    """The answer to a Call, matched purely by id."""

    tag: Literal["R"] = "R"
    id: int = Field(ge=0)
    result: Result

    @classmethod
    def success(cls, request_id: int, value: Any) -> ResponseEnvelope:
        return cls(id=request_id, result=Success(value=value))

    @classmethod
    def failure(cls, request_id: int, exc: BaseException) -> ResponseEnvelope:
        return cls(id=request_id, result=Failure.from_exception(exc))


Envelope = Annotated[
    CallEnvelope | NotifyEnvelope | ResponseEnvelope,
    Field(discriminator="tag"),
]
