"""Typed inbound events.

Raw Lambda payloads are classified once by the router into one of these
variants; handlers only ever see the typed form.
"""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class ObjectCreated(BaseModel):
    """Object-storage "created" notification."""

    kind: Literal["object_created"] = "object_created"
    bucket: str
    key: str = Field(..., description="URL-encoded object key")
    event_name: Optional[str] = None


class JobCompletionNotice(BaseModel):
    """Pub/sub message announcing that an analysis job finished."""

    kind: Literal["job_completion"] = "job_completion"
    message: str = Field(..., description="Raw message body, normally JSON")
    message_id: Optional[str] = None
    topic_arn: Optional[str] = None


class ApiRequest(BaseModel):
    """HTTP-shaped request (API gateway or direct invocation)."""

    kind: Literal["api_request"] = "api_request"
    method: str = "GET"
    path: str = ""
    query: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None


class Unrecognized(BaseModel):
    """Anything the router cannot classify."""

    kind: Literal["unrecognized"] = "unrecognized"
    reason: str = "Unsupported event type"


IngestEvent = Union[ObjectCreated, JobCompletionNotice, ApiRequest, Unrecognized]


class CompletionMessage(BaseModel):
    """Parsed body of a job completion notification."""

    job_id: str = Field(..., alias="JobId")
    status: str = Field(..., alias="Status")
    status_message: Optional[str] = Field(None, alias="StatusMessage")
    job_tag: Optional[str] = Field(None, alias="JobTag")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CompletionMessage":
        return cls.model_validate(payload)
