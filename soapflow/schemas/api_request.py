"""Pydantic schemas for transport requests and responses."""

from typing import Literal, Any
from pydantic import AliasChoices, Field

from soapflow.schemas.base import CamelModel
from soapflow.schemas.api_assertions import Assertion, Extractor


RequestKind = Literal["soap", "rest", "graphql", "http"]


class ApiRequest(CamelModel):
    """A request as composed in the editor, before or after templating."""
    name: str = ""
    body: str = Field("", validation_alias=AliasChoices("body", "request"))
    endpoint: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    request_type: RequestKind | None = None
    kind: RequestKind | None = None  # Set on the dispatched copy
    method: str | None = None
    content_type: str | None = None
    body_type: str | None = None
    rest_config: dict[str, Any] | None = None
    graphql_config: dict[str, Any] | None = None
    assertions: list[Assertion] = Field(default_factory=list)
    extractors: list[Extractor] = Field(default_factory=list)


class ApiResponse(CamelModel):
    """Outcome of a transport call. Failures are data, not exceptions."""
    success: bool
    status: int | None = None
    body: Any = ""
    raw_response: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    time_taken: int = 0  # milliseconds
    error: str | None = None
