"""Pydantic schemas for HTTP request/response bodies."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


class PaymentAccept(BaseModel):
    """Acknowledgement returned to the gateway for a processed notification."""

    orderReference: str
    status: str = Field("accept", description="Always 'accept'")
    time: int = Field(..., description="Unix seconds")
    signature: str = Field(..., description="HMAC-MD5 of orderReference;status;time")

