"""Value extraction from responses: regex, simplified XPath, dotted JSONPath, headers."""

import io
import json
import logging
import re
from typing import Any
from xml.etree import ElementTree as ET
from xml.parsers.expat import ExpatError, errors as expat_errors

import xmltodict
from jsonpath_ng import parse as jsonpath_parse
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError

from soapflow.schemas.api_assertions import Extractor
from soapflow.schemas.api_request import ApiResponse

logger = logging.getLogger(__name__)


class RegexExtractor:
    """
    Extracts values from text using regular expressions.

    Used for non-XML responses (JSON, HTML, plain text). The first capture
    group is returned when the pattern has one, otherwise the full match.
    """

    @staticmethod
    def extract(text: str | None, pattern: str | None) -> str | None:
        """
        Extract the first match of pattern from text.

        Examples:
            extract('{"token":"abc123"}', '"token":"([^"]+)"') -> "abc123"
            extract('<title>My Page</title>', '<title>(.*?)</title>') -> "My Page"
        """
        if not text or not pattern:
            return None

        try:
            match = re.search(pattern, text)
        except re.error as e:
            logger.warning(f"Regex extraction failed for pattern {pattern!r}: {e}")
            return None

        if not match:
            return None
        return _match_value(match)

    @staticmethod
    def extract_all(text: str | None, pattern: str | None) -> list[str]:
        """
        Extract every non-overlapping match, in order.

        Example:
            extract_all('<id>1</id><id>2</id>', r'<id>(\\d+)</id>') -> ["1", "2"]
        """
        if not text or not pattern:
            return []

        try:
            return [_match_value(m) for m in re.finditer(pattern, text)]
        except re.error as e:
            logger.warning(f"Regex extraction (all) failed for pattern {pattern!r}: {e}")
            return []

    @staticmethod
    def is_valid_pattern(pattern: str) -> bool:
        try:
            re.compile(pattern)
            return True
        except re.error:
            return False

    @staticmethod
    def common_patterns() -> dict[str, dict[str, str]]:
        """Common patterns for quick reference in the editor."""
        return {
            "jsonField": {
                "pattern": r'"([^"]+)":"([^"]+)"',
                "description": "Extract value from JSON field",
                "example": '{"token":"abc123"} -> token',
            },
            "email": {
                "pattern": r"[\w.+-]+@[\w-]+\.[\w.-]+",
                "description": "Extract email address",
                "example": "Contact: user@example.com -> user@example.com",
            },
            "number": {
                "pattern": r"\d+",
                "description": "Extract first number",
                "example": "Price: 42.50 -> 42",
            },
            "decimal": {
                "pattern": r"\d+\.\d+",
                "description": "Extract decimal number",
                "example": "Price: 42.50 -> 42.50",
            },
            "url": {
                "pattern": r'https?://[^\s<>"]+',
                "description": "Extract URL",
                "example": "Visit https://example.com today -> https://example.com",
            },
            "htmlTag": {
                "pattern": r"<(\w+)>(.*?)</\1>",
                "description": "Extract content from HTML tag",
                "example": "<title>Hello</title> -> title",
            },
            "betweenMarkers": {
                "pattern": r"START(.*?)END",
                "description": "Extract text between markers",
                "example": "START important END -> ' important '",
            },
            "uuid": {
                "pattern": r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
                "description": "Extract UUID",
                "example": "ID: 550e8400-e29b-41d4-a716-446655440000 -> 550e8400-...",
            },
        }


def _match_value(match: re.Match) -> str:
    if match.re.groups and match.group(1) is not None:
        return match.group(1)
    return match.group(0)


# =============================================================================
# Simplified XPath
# =============================================================================

SEGMENT_PATTERN = re.compile(r"^([^\[\]]+)(?:\[(\d+)\])?$")

UNBOUND_PREFIX = expat_errors.codes[expat_errors.XML_ERROR_UNBOUND_PREFIX]


def parse_xml_tree(xml: str) -> dict:
    """
    Parse XML into a nested dict keyed by qualified tag names.

    Namespace prefixes from the source are preserved (``soap:Body``).
    Repeated sibling tags become lists, attributes are stored as ``@_name``
    and text of elements that also carry attributes or children is kept
    under ``#text``. Text-only elements collapse to their text.

    Documents using a prefix they never declare are read without namespace
    processing, so their prefixes are kept literally.
    """
    uri_to_prefix: dict[str, str] = {}
    root = None
    try:
        for event, item in ET.iterparse(io.StringIO(xml), events=("start-ns", "end")):
            if event == "start-ns":
                prefix, uri = item
                # First declaration wins; the default namespace maps to no prefix
                uri_to_prefix.setdefault(uri, prefix)
            else:
                root = item
    except ET.ParseError as e:
        if e.code != UNBOUND_PREFIX:
            raise
        return xmltodict.parse(xml, attr_prefix="@_", cdata_key="#text")

    if root is None:
        raise ValueError("Empty XML document")

    def qualify(tag: str) -> str:
        if tag.startswith("{"):
            uri, local = tag[1:].split("}", 1)
            prefix = uri_to_prefix.get(uri, "")
            return f"{prefix}:{local}" if prefix else local
        return tag

    def convert(element: ET.Element) -> Any:
        children = list(element)
        text = (element.text or "").strip()

        if not children and not element.attrib:
            return text or None  # empty elements carry no value

        node: dict[str, Any] = {}
        for key, value in element.attrib.items():
            node[f"@_{qualify(key)}"] = value
        for child in children:
            key = qualify(child.tag)
            value = convert(child)
            if key in node:
                if not isinstance(node[key], list):
                    node[key] = [node[key]]
                node[key].append(value)
            else:
                node[key] = value
        if text:
            node["#text"] = text
        return node

    return {qualify(root.tag): convert(root)}


def _find_key(node: dict, tag_name: str) -> str | None:
    """Resolve a path segment against the keys of one node."""
    if tag_name in node:
        return tag_name

    local_name = tag_name.split(":", 1)[1] if ":" in tag_name else tag_name
    for key in node:
        if key.startswith("@_") or key == "#text":
            continue
        if key == local_name or key.endswith(f":{local_name}"):
            return key
    return None


def _select(value: Any, index: int) -> tuple[bool, Any]:
    """Apply a 0-based index to a matched value."""
    if isinstance(value, list):
        if 0 <= index < len(value):
            return True, value[index]
        return False, None
    if index == 0:
        return True, value
    return False, None


def _descendant_search(node: Any, tag_name: str, index: int) -> tuple[bool, Any]:
    """Depth-first search for the first descendant matching tag_name."""
    if isinstance(node, list):
        for item in node:
            found, value = _descendant_search(item, tag_name, index)
            if found:
                return found, value
        return False, None

    if not isinstance(node, dict):
        return False, None

    key = _find_key(node, tag_name)
    if key is not None:
        return _select(node[key], index)

    for key, child in node.items():
        if key.startswith("@_") or key == "#text":
            continue
        found, value = _descendant_search(child, tag_name, index)
        if found:
            return found, value
    return False, None


class XPathEvaluator:
    """
    Simplified XPath over a parsed XML tree.

    Supports absolute paths of ``Tag[n]`` segments (n is 1-based) with
    prefix-tolerant matching, and a leading ``//`` to find the first segment
    anywhere in the document. Anything else resolves to None.
    """

    @staticmethod
    def evaluate(xml: str | None, xpath: str | None) -> str | None:
        if not xml or not xpath:
            return None

        try:
            current: Any = parse_xml_tree(xml)
        except (ET.ParseError, ExpatError, ValueError) as e:
            logger.debug(f"XPath evaluation skipped, unparseable XML: {e}")
            return None

        descendant = xpath.startswith("//")
        path = xpath.lstrip("/")
        segments = path.split("/")

        for position, segment in enumerate(segments):
            match = SEGMENT_PATTERN.match(segment)
            if not match:
                return None

            tag_name = match.group(1)
            index = int(match.group(2)) - 1 if match.group(2) else 0

            if descendant and position == 0:
                found, current = _descendant_search(current, tag_name, index)
                if not found:
                    return None
                continue

            if not isinstance(current, dict):
                return None
            key = _find_key(current, tag_name)
            if key is None:
                return None
            found, current = _select(current[key], index)
            if not found:
                return None

        if isinstance(current, dict):
            if "#text" in current:
                return str(current["#text"])
            return None
        if isinstance(current, list) or current is None:
            return None
        return str(current)


# =============================================================================
# Simplified JSONPath and headers
# =============================================================================

def to_jsonpath(path: str) -> str | None:
    """
    Normalize a dotted path (``$.a.b``, ``a.b``, ``items.0.id``) to a
    jsonpath_ng expression. Filters, wildcards, brackets and recursive
    descent are not part of the dotted form and yield None.
    """
    if any(token in path for token in ("[", "*", "..")):
        return None

    clean_path = path[2:] if path.startswith("$.") else path.lstrip("$")
    expression = "$"
    for part in clean_path.split(".") if clean_path else []:
        if not part or '"' in part:
            return None
        # Numeric segments index into lists; field names are quoted
        expression += f"[{part}]" if part.isdigit() else f'."{part}"'
    return expression


def extract_json_path(data: Any, path: str) -> str | None:
    """Dotted-path lookup over JSON text or an already-parsed value."""
    expression = to_jsonpath(path) if path else None
    if expression is None:
        return None

    try:
        parsed = json.loads(data) if isinstance(data, (str, bytes)) else data
        matches = jsonpath_parse(expression).find(parsed)
    except (json.JSONDecodeError, JsonPathLexerError, JsonPathParserError, KeyError, TypeError) as e:
        logger.debug(f"JSONPath {path!r} not evaluated: {e}")
        return None

    value = matches[0].value if matches else None
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def extract_header(headers: dict[str, Any] | None, name: str | None) -> str | None:
    """Case-insensitive exact-name header lookup."""
    if not headers or not name:
        return None
    for key, value in headers.items():
        if key.lower() == name.lower():
            return str(value)
    return None


# =============================================================================
# Dispatch
# =============================================================================

def _response_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def run_extractor(extractor: Extractor, response: ApiResponse) -> str | None:
    """
    Run one extractor against a response and return its raw result.

    Raises nothing: every failure resolves to None.
    """
    try:
        if extractor.type == "XPath":
            return XPathEvaluator.evaluate(
                response.raw_response or _response_text(response.body), extractor.pattern
            )
        elif extractor.type == "Regex":
            return RegexExtractor.extract(
                _response_text(response.body) or response.raw_response, extractor.pattern
            )
        elif extractor.type == "JSONPath":
            body = response.body if response.body not in (None, "") else response.raw_response
            return extract_json_path(body, extractor.pattern)
        elif extractor.type == "Header":
            return extract_header(response.headers, extractor.header_name or extractor.pattern)
    except Exception as e:
        logger.warning(f"Extractor '{extractor.variable}' failed: {e}")
        return None

    logger.warning(f"Unknown extractor type: {extractor.type}")
    return None


def extract_variable(extractor: Extractor, response: ApiResponse) -> tuple[str, str | None]:
    """
    Extract a variable from a response, falling back to the default value.

    Returns:
        Tuple of (variable_name, value). Value is None when nothing matched
        and no default is configured; callers leave the variable unset.
    """
    value = run_extractor(extractor, response)
    if value is None:
        value = extractor.default_value
    return extractor.variable, value
