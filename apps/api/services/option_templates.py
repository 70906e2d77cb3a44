"""
Mustache-style option templates.

Property options may reference other properties of the same profile, e.g. a
query option `select total from orders where user_id = {{ user_id }}`. The keys
referenced this way are the property's dependencies.

Source options may also reference run variables (`{{ now }}`, `{{ run.id }}`,
`{{ previous_run.created_at.sql }}` ...), rendered when a schedule run pulls a
page. Those never count as property references.
"""

from datetime import datetime, timezone
import re
from typing import Any, Dict, Iterable, List, Set

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
RUN_VARIABLE_ROOTS = ("now", "run", "previous_run")


def template_keys(value: str) -> List[str]:
    """Variable names referenced by one string, in order of first appearance."""
    seen: List[str] = []
    for match in TEMPLATE_PATTERN.finditer(value):
        key = match.group(1)
        if key not in seen:
            seen.append(key)
    return seen


def collect_template_keys(*values: Any) -> Set[str]:
    """Walk dicts/lists/strings and collect every referenced variable name."""
    keys: Set[str] = set()
    stack: List[Any] = list(values)
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            keys.update(template_keys(item))
        elif isinstance(item, dict):
            stack.extend(item.values())
        elif isinstance(item, (list, tuple)):
            stack.extend(item)
    return keys


def _format(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ",".join(_format(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(value: str, variables: Dict[str, Any]) -> str:
    """Replace {{ key }} with the variable's value; arrays are comma-joined, unknown keys render empty."""
    return TEMPLATE_PATTERN.sub(lambda m: _format(variables.get(m.group(1))), value)


def render_options(options: Any, variables: Dict[str, Any]) -> Any:
    if isinstance(options, str):
        return render(options, variables)
    if isinstance(options, dict):
        return {k: render_options(v, variables) for k, v in options.items()}
    if isinstance(options, (list, tuple)):
        return [render_options(v, variables) for v in options]
    return options


def unknown_keys(referenced: Iterable[str], known: Iterable[str]) -> Set[str]:
    return set(referenced) - set(known)


def is_run_variable(key: str) -> bool:
    return key.split(".", 1)[0] in RUN_VARIABLE_ROOTS


def time_variables(name: str, value: datetime) -> Dict[str, Any]:
    """`name` as ISO 8601 plus `.iso`, `.sql`, `.date` and `.unix` renderings."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return {
        name: value.isoformat(),
        f"{name}.iso": value.isoformat(),
        f"{name}.sql": value.strftime("%Y-%m-%d %H:%M:%S"),
        f"{name}.date": value.strftime("%Y-%m-%d"),
        f"{name}.unix": int(value.timestamp()),
    }
