"""
Group Rule Evaluator

Pure evaluation of a calculated Group's flat rule list against one profile's
typed property values. Rules combine with AND (`all`) or OR (`any`); there is
no nesting.

Semantics per rule:
- A profile with no value for the key matches only `not_exists`.
- Array properties match a positive operator if any value matches.
- A negative operator (`ne`, `not_contains`, `not_in`) matches only if no
  value matches its positive counterpart.
- `relative_gt` / `relative_lt` compare a date against now +/- N units,
  evaluated when the rule runs.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.exceptions import ValidationError
from models import as_utc, utcnow
from schemas import GroupRule
from services.property_values import from_raw, parse_boolean, parse_date, to_raw

OPS = (
    "eq", "ne", "gt", "gte", "lt", "lte",
    "contains", "not_contains", "in", "not_in",
    "exists", "not_exists", "relative_gt", "relative_lt",
)
OP_ALIASES = {"=": "eq", "!=": "ne", ">": "gt", ">=": "gte", "<": "lt", "<=": "lte"}
NEGATIVE_OPS = {"ne": "eq", "not_contains": "contains", "not_in": "in"}
NO_MATCH_OPS = ("exists", "not_exists")
RELATIVE_OPS = ("relative_gt", "relative_lt")
ORDERED_TYPES = ("integer", "float", "date")

OP_DESCRIPTIONS = {
    "eq": "is equal to",
    "ne": "is not equal to",
    "gt": "is greater than",
    "gte": "is greater than or equal to",
    "lt": "is less than",
    "lte": "is less than or equal to",
    "contains": "contains",
    "not_contains": "does not contain",
    "in": "is one of",
    "not_in": "is not one of",
    "exists": "exists",
    "not_exists": "does not exist",
    "relative_gt": "is after (relative)",
    "relative_lt": "is before (relative)",
}

# Profile attributes that can be used as rule keys alongside property keys
TOP_LEVEL_KEYS = {"_profile_id": "string", "_created_at": "date", "_updated_at": "date"}

_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
    "weeks": 7 * 24 * 60 * 60,
    "months": 30 * 24 * 60 * 60,
    "years": 365 * 24 * 60 * 60,
}


def rule_options() -> Dict[str, Any]:
    """What a rule editor may offer."""
    return {
        "rule_limit": settings.GROUP_RULE_LIMIT,
        "ops": {
            "_all": {op: OP_DESCRIPTIONS[op] for op in ("eq", "ne", "exists", "not_exists")},
            "string": {op: OP_DESCRIPTIONS[op] for op in ("eq", "ne", "contains", "not_contains", "in", "not_in", "exists", "not_exists")},
            "integer": {op: OP_DESCRIPTIONS[op] for op in ("eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "exists", "not_exists")},
            "float": {op: OP_DESCRIPTIONS[op] for op in ("eq", "ne", "gt", "gte", "lt", "lte", "exists", "not_exists")},
            "boolean": {op: OP_DESCRIPTIONS[op] for op in ("eq", "ne", "exists", "not_exists")},
            "date": {op: OP_DESCRIPTIONS[op] for op in ("eq", "ne", "gt", "gte", "lt", "lte", "exists", "not_exists", "relative_gt", "relative_lt")},
        },
        "top_level_keys": dict(TOP_LEVEL_KEYS),
        "relative_match_units": list(_UNIT_SECONDS.keys()),
    }


def normalize_rule(rule: Any) -> GroupRule:
    if isinstance(rule, GroupRule):
        data = rule.model_dump()
    elif isinstance(rule, dict):
        data = dict(rule)
    else:
        # Flat rules only
        raise ValidationError(f"invalid group rule {rule}: expected a single rule object", field="rules")
    op = data.get("op")
    data["op"] = OP_ALIASES.get(op, op)
    try:
        return GroupRule(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid group rule {rule}: {e.errors()[0]['msg']}", field="rules")


def validate_rules(rules: Iterable[Any], property_types: Dict[str, str]) -> List[GroupRule]:
    """
    Normalize and check a rule list against known keys and their types.

    `property_types` maps property key -> property type; top-level keys are
    always known.
    """
    normalized = [normalize_rule(r) for r in rules]
    if len(normalized) > settings.GROUP_RULE_LIMIT:
        raise ValidationError(
            f"too many group rules ({len(normalized)}); the limit is {settings.GROUP_RULE_LIMIT}",
            field="rules",
        )
    types = dict(TOP_LEVEL_KEYS)
    types.update(property_types)
    for rule in normalized:
        if rule.key not in types:
            raise ValidationError(f"cannot find property {rule.key} for group rule", field="rules")
        if rule.op not in OPS:
            raise ValidationError(f"{rule.op} is not a valid group rule operation", field="rules")
        ptype = types[rule.key]
        if rule.op in RELATIVE_OPS:
            if ptype != "date":
                raise ValidationError(f"relative rules only apply to dates, not {rule.key}", field="rules")
            if rule.relative_match_number is None or rule.relative_match_unit is None:
                raise ValidationError(
                    f"relative rule on {rule.key} needs relative_match_number and relative_match_unit",
                    field="rules",
                )
        elif rule.op not in NO_MATCH_OPS:
            if rule.match is None:
                raise ValidationError(f"group rule on {rule.key} ({rule.op}) needs a match value", field="rules")
            if rule.op in ("gt", "gte", "lt", "lte") and ptype not in ORDERED_TYPES:
                raise ValidationError(f"{rule.op} cannot be used with {ptype} property {rule.key}", field="rules")
            _coerce_match(ptype, rule)
    return normalized


def _coerce_one(ptype: str, value: Any) -> Any:
    if ptype == "date":
        return parse_date(value)
    if ptype == "boolean":
        return parse_boolean(value)
    return from_raw(ptype, to_raw(ptype, value))


def _coerce_match(ptype: str, rule: GroupRule) -> Any:
    if rule.op in ("contains", "not_contains"):
        return str(rule.match).lower()
    if rule.op in ("in", "not_in"):
        items = rule.match if isinstance(rule.match, list) else str(rule.match).split(",")
        return [_coerce_one(ptype, i.strip() if isinstance(i, str) else i) for i in items]
    return _coerce_one(ptype, rule.match)


def relative_reference(rule: GroupRule, now: datetime) -> datetime:
    delta = timedelta(seconds=rule.relative_match_number * _UNIT_SECONDS[rule.relative_match_unit])
    return now - delta if rule.relative_match_direction == "subtract" else now + delta


def _value_matches(op: str, value: Any, match: Any) -> bool:
    if isinstance(value, datetime):
        value = as_utc(value)
    if op == "eq":
        return value == match
    if op == "gt":
        return value > match
    if op == "gte":
        return value >= match
    if op == "lt":
        return value < match
    if op == "lte":
        return value <= match
    if op == "contains":
        return match in str(value).lower()
    if op == "in":
        return value in match
    raise ValidationError(f"{op} is not a valid group rule operation")


def rule_matches(rule: GroupRule, ptype: str, values: List[Any], now: Optional[datetime] = None) -> bool:
    present = [v for v in values if v is not None]
    if not present:
        return rule.op == "not_exists"
    if rule.op == "exists":
        return True
    if rule.op == "not_exists":
        return False

    if rule.op in RELATIVE_OPS:
        reference = relative_reference(rule, now or utcnow())
        op = "gt" if rule.op == "relative_gt" else "lt"
        return any(_value_matches(op, v, reference) for v in present)

    match = _coerce_match(ptype, rule)
    positive = NEGATIVE_OPS.get(rule.op)
    if positive:
        return not any(_value_matches(positive, v, match) for v in present)
    return any(_value_matches(rule.op, v, match) for v in present)


def profile_matches(
    rules: List[GroupRule],
    match_type: str,
    values: Dict[str, List[Any]],
    types: Dict[str, str],
    now: Optional[datetime] = None,
) -> bool:
    """
    `values` maps every rule key (property keys and top-level keys) to a list of
    typed values; `types` maps the same keys to their property type.
    """
    if not rules:
        return False
    now = now or utcnow()
    results = (rule_matches(r, types.get(r.key, "string"), values.get(r.key, []), now) for r in rules)
    if match_type == "any":
        return any(results)
    return all(results)


def funnel(rules: List[GroupRule], match_type: str, values: Dict[str, List[Any]], types: Dict[str, str], now: datetime):
    """Per-rule results and cumulative (prefix) results for one profile."""
    component = [rule_matches(r, types.get(r.key, "string"), values.get(r.key, []), now) for r in rules]
    cumulative: List[bool] = []
    acc: Optional[bool] = None
    for result in component:
        if acc is None:
            acc = result
        elif match_type == "any":
            acc = acc or result
        else:
            acc = acc and result
        cumulative.append(acc)
    return component, cumulative
