"""Pydantic schemas for response assertions and variable extractors."""

from enum import Enum
from typing import Literal, Any
from pydantic import AliasChoices, Field, field_validator

from soapflow.schemas.base import CamelModel


class AssertionType(str, Enum):
    """Assertion variants understood by the assertion engine."""
    CONTAINS = "Simple Contains"
    NOT_CONTAINS = "Simple Not Contains"
    RESPONSE_SLA = "Response SLA"
    XPATH_MATCH = "XPath Match"


# Short spellings used by older project files
ASSERTION_TYPE_ALIASES = {
    "Contains": AssertionType.CONTAINS,
    "NotContains": AssertionType.NOT_CONTAINS,
    "ResponseSLA": AssertionType.RESPONSE_SLA,
    "XPathMatch": AssertionType.XPATH_MATCH,
}


class Assertion(CamelModel):
    """
    Declarative pass/fail predicate over a response body and elapsed time.

    `type` is kept as a plain string so that unknown variants still parse and
    are reported as failures by the engine instead of rejecting the project.
    """
    type: str
    name: str | None = None
    id: str | None = None
    description: str | None = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    # Configuration keys by type:
    # - Simple Contains / Simple Not Contains: token, ignoreCase
    # - Response SLA: sla (milliseconds, string or int)
    # - XPath Match: xpath, expectedContent

    @property
    def kind(self) -> AssertionType | None:
        """Resolved assertion variant, or None when the type is unknown."""
        if self.type in ASSERTION_TYPE_ALIASES:
            return ASSERTION_TYPE_ALIASES[self.type]
        try:
            return AssertionType(self.type)
        except ValueError:
            return None


class AssertionResult(CamelModel):
    """Result of a single assertion execution."""
    id: str | None = None
    name: str
    status: Literal["PASS", "FAIL"]
    message: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == "PASS"


ExtractorType = Literal["XPath", "Regex", "JSONPath", "Header"]

_EXTRACTOR_TYPES: dict[str, ExtractorType] = {
    "xpath": "XPath",
    "regex": "Regex",
    "jsonpath": "JSONPath",
    "header": "Header",
}


class Extractor(CamelModel):
    """Rule deriving one named variable from a response."""
    type: ExtractorType = "XPath"
    pattern: str = Field(
        "",
        validation_alias=AliasChoices("pattern", "path"),
        description="XPath, regex, dotted JSONPath or header name",
    )
    variable: str = Field(..., min_length=1)
    default_value: str | None = None
    header_name: str | None = None  # Header extractors only; falls back to pattern
    source: str = "body"  # Test case steps only run body extractors

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if v is None:
            return "XPath"
        if isinstance(v, str):
            return _EXTRACTOR_TYPES.get(v.lower(), v)
        return v
