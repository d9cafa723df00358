"""Assertion engine for response assertions."""

import json
import logging
from typing import Any, Callable

from soapflow.schemas.api_assertions import Assertion, AssertionResult, AssertionType

logger = logging.getLogger(__name__)


class AssertionEngine:
    """
    Evaluates assertions against a response body and elapsed time.

    Supported assertion types:
    - Simple Contains: substring presence in body
    - Simple Not Contains: substring absence in body
    - Response SLA: response time threshold
    - XPath Match: reserved, always fails

    Evaluation is total: every assertion yields exactly one result, in input
    order, and no exception escapes.
    """

    def __init__(self):
        self._handlers: dict[AssertionType, Callable[[Assertion, str, int], AssertionResult]] = {
            AssertionType.CONTAINS: self._assert_contains,
            AssertionType.NOT_CONTAINS: self._assert_not_contains,
            AssertionType.RESPONSE_SLA: self._assert_sla,
            AssertionType.XPATH_MATCH: self._assert_xpath_match,
        }

    def run(
        self,
        response_body: Any,
        elapsed_ms: int,
        assertions: list[Assertion] | None,
    ) -> list[AssertionResult]:
        """
        Run all assertions and return results.

        Args:
            response_body: Response body; None is treated as empty
            elapsed_ms: Measured response time in milliseconds
            assertions: Assertion configurations

        Returns:
            One AssertionResult per assertion, order preserved
        """
        body = _as_text(response_body)
        return [self.run_one(assertion, body, elapsed_ms) for assertion in assertions or []]

    def run_one(self, assertion: Assertion, body: str, elapsed_ms: int) -> AssertionResult:
        """Execute a single assertion."""
        kind = assertion.kind
        handler = self._handlers.get(kind) if kind else None
        if not handler:
            return AssertionResult(
                id=assertion.id,
                name=assertion.name or assertion.type,
                status="FAIL",
                message="Unknown assertion type",
            )

        try:
            return handler(assertion, body, elapsed_ms)
        except Exception as e:
            logger.warning(f"Assertion '{assertion.name or assertion.type}' raised: {e}")
            return AssertionResult(
                id=assertion.id,
                name=assertion.name or kind.value,
                status="FAIL",
                message=f"Assertion error: {e}",
            )

    def _assert_contains(self, assertion: Assertion, body: str, elapsed_ms: int) -> AssertionResult:
        """Assert response body contains the configured token."""
        token, found = _token_search(assertion, body)
        name = assertion.name or "Contains"

        if found:
            return AssertionResult(id=assertion.id, name=name, status="PASS")
        return AssertionResult(
            id=assertion.id,
            name=name,
            status="FAIL",
            message=f"Token [{token}] not found in response.",
        )

    def _assert_not_contains(self, assertion: Assertion, body: str, elapsed_ms: int) -> AssertionResult:
        """Assert response body does not contain the configured token."""
        token, found = _token_search(assertion, body)
        name = assertion.name or "Not Contains"

        if not found:
            return AssertionResult(id=assertion.id, name=name, status="PASS")
        return AssertionResult(
            id=assertion.id,
            name=name,
            status="FAIL",
            message=f"Token [{token}] found in response.",
        )

    def _assert_sla(self, assertion: Assertion, body: str, elapsed_ms: int) -> AssertionResult:
        """Assert response time is within threshold."""
        limit = _parse_limit(assertion.configuration.get("sla"))
        name = assertion.name or "Response SLA"

        if elapsed_ms <= limit:
            return AssertionResult(
                id=assertion.id,
                name=name,
                status="PASS",
                message=f"{elapsed_ms} ms <= {limit} ms",
            )
        return AssertionResult(
            id=assertion.id,
            name=name,
            status="FAIL",
            message=f"Response time {elapsed_ms} ms > {limit} ms",
        )

    def _assert_xpath_match(self, assertion: Assertion, body: str, elapsed_ms: int) -> AssertionResult:
        return AssertionResult(
            id=assertion.id,
            name=assertion.name or "XPath Match",
            status="FAIL",
            message="XPath Match not yet implemented.",
        )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return json.dumps(value)


def _token_search(assertion: Assertion, body: str) -> tuple[str, bool]:
    config = assertion.configuration
    token = str(config.get("token") or "")
    ignore_case = config.get("ignoreCase", config.get("ignore_case")) is True

    haystack = body.lower() if ignore_case else body
    needle = token.lower() if ignore_case else token
    return token, needle in haystack


def _parse_limit(raw: Any) -> int:
    """Parse an SLA limit the way project files store it (string or number)."""
    if raw is None or raw == "":
        return 0
    if isinstance(raw, (int, float)):
        return int(raw)
    digits = ""
    for char in str(raw).strip():
        if char.isdigit() or (char == "-" and not digits):
            digits += char
        else:
            break
    try:
        return int(digits)
    except ValueError:
        return 0
