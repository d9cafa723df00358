"""Template token substitution for request endpoints, bodies and headers."""

import calendar
import json
import random
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any


class VariableResolver:
    """
    Substitutes template tokens with variable values.

    Token forms:
    - {{name}}: looked up by exact key, then as a dotted path
      ({{login.token}}, {{items.0.id}})
    - ${name} / ${#TestCase#name}: live test case context only
    - {{uuid}}, {{newguid}}, {{now}}, {{epoch}}, {{randomInt(a,b)}},
      {{now+3d}} / {{now-1m}} / {{now+1y}}: generated values

    A token with no value stays in the output as written.
    """

    VARIABLE_PATTERN = re.compile(r'\{\{([^}]+)\}\}')
    CONTEXT_PATTERN = re.compile(r'\$\{(?:#TestCase#)?([^}]+)\}')
    RANDOM_INT_PATTERN = re.compile(r'\{\{randomInt\((-?\d+),\s*(-?\d+)\)\}\}')
    DATE_MATH_PATTERN = re.compile(r'\{\{now([+-])(\d+)([dmy])\}\}')

    def resolve(self, template: str | None, variables: dict) -> str:
        """Replace {{name}} tokens in template from a single variable map."""
        if template is None:
            return ""
        if not isinstance(template, str):
            return str(template)
        if "{{" not in template:
            return template

        return self.VARIABLE_PATTERN.sub(
            lambda match: self._substitute(match, variables),
            template,
        )

    def resolve_dict(self, values: dict | None, variables: dict) -> dict:
        """Resolve each string value of a flat mapping such as a header map."""
        resolved = {}
        for key, value in (values or {}).items():
            resolved[key] = self.resolve(value, variables) if isinstance(value, str) else value
        return resolved

    def process(
        self,
        text: str | None,
        env_vars: dict | None = None,
        globals_: dict | None = None,
        scripts_dir: str | None = None,
        context_vars: dict | None = None,
    ) -> str:
        """
        Apply every templating scope to text, in this order:

        1. ${#TestCase#name} / ${name} from the test case context
        2. generated values ({{uuid}}, {{now}}, ...)
        3. {{url}} / {{env}} from the environment's endpoint_url
        4. {{name}} from environment, then globals, then context

        Within step 4 the first scope holding the name wins.
        scripts_dir is accepted for file-backed script functions and
        currently unused.
        """
        if not text:
            return ""

        env_vars = env_vars or {}
        context_vars = context_vars or {}

        output = text
        if context_vars:
            output = self.CONTEXT_PATTERN.sub(
                lambda match: self._substitute(match, context_vars),
                output,
            )

        output = self._generate_values(output)

        endpoint_url = env_vars.get("endpoint_url")
        if endpoint_url is not None:
            for shortcut in ("{{url}}", "{{env}}"):
                output = output.replace(shortcut, str(endpoint_url))

        # Lowest precedence first so higher scopes overwrite
        scopes: dict[str, Any] = {}
        scopes.update(context_vars)
        scopes.update(globals_ or {})
        scopes.update({k: v for k, v in env_vars.items() if k != "env"})

        return self.resolve(output, scopes)

    def _substitute(self, match: re.Match, variables: dict) -> str:
        value = self._lookup(match.group(1).strip(), variables)
        if value is None:
            return match.group(0)
        return _stringify(value)

    def _lookup(self, name: str, variables: dict) -> Any:
        """Exact key first, then a dotted path through dicts and list indices."""
        if name in variables:
            return variables[name]

        current: Any = variables
        for part in name.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return None
        return current

    def _generate_values(self, text: str) -> str:
        if "{{" not in text:
            return text

        now = datetime.now(timezone.utc)
        output = re.sub(r'\{\{(?:uuid|newguid)\}\}', lambda _: str(uuid.uuid4()), text)
        output = output.replace("{{now}}", now.isoformat())
        output = output.replace("{{epoch}}", str(int(now.timestamp())))
        output = self.RANDOM_INT_PATTERN.sub(_random_int, output)
        return self.DATE_MATH_PATTERN.sub(lambda m: _date_math(now, m), output)

    def has_variables(self, template: str | None) -> bool:
        return isinstance(template, str) and self.VARIABLE_PATTERN.search(template) is not None

    def extract_variables(self, template: str | None) -> list[str]:
        """Names referenced by {{...}} tokens, in order of appearance."""
        if not isinstance(template, str):
            return []
        return [name.strip() for name in self.VARIABLE_PATTERN.findall(template)]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _random_int(match: re.Match) -> str:
    bounds = sorted((int(match.group(1)), int(match.group(2))))
    return str(random.randint(*bounds))


def _date_math(now: datetime, match: re.Match) -> str:
    amount = int(match.group(2))
    if match.group(1) == "-":
        amount = -amount

    unit = match.group(3)
    if unit == "d":
        return (now + timedelta(days=amount)).isoformat()

    months = amount if unit == "m" else amount * 12
    year, month_index = divmod(now.year * 12 + now.month - 1 + months, 12)
    month = month_index + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day).isoformat()
