from __future__ import annotations
import datetime
import logging
import time
from abc import abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

import dateutil.parser

from .rollout import ROLLOUT_SCALE, in_rollout, stringify


logger = logging.getLogger(__name__)

type FlatContext = dict[str, Any]
# Insertion ordered set of missing field names.
type MissingFields = dict[str, None]


def flatten_context(context: Mapping[str, Any]) -> FlatContext:
    """
    Flatten a nested context into dot-joined keys, e.g.
    {"company": {"id": "c1"}} becomes {"company.id": "c1"}. List items use
    their index as the key segment. Empty mappings and lists are kept as leaf
    values so that their presence can still be tested.
    """
    if not isinstance(context, Mapping):
        raise TypeError(f"context must be a mapping, not {type(context).__name__}")

    flat: FlatContext = {}

    def recurse(cur: Any, prop: str):
        if isinstance(cur, Mapping):
            if not cur:
                flat[prop] = {}
            for k, v in cur.items():
                if not isinstance(k, str):
                    raise TypeError(f"context key must be a string, not {type(k).__name__}")
                recurse(v, f"{prop}.{k}" if prop else k)
        elif isinstance(cur, (list, tuple)):
            if not cur:
                flat[prop] = []
            for i, v in enumerate(cur):
                recurse(v, f"{prop}.{i}" if prop else str(i))
        elif isinstance(cur, (str, int, float, bool, type(None))):
            flat[prop] = cur
        else:
            raise TypeError(f"context value must be a string, int, float, bool or None, not {type(cur).__name__}")

    if context:
        recurse(context, "")
    return flat


# Missing date parts are taken from this, not from the current date.
_default_date = datetime.datetime(1970, 1, 1)


def _parse_timestamp(s: str) -> float | None:
    """
    Parse a date or datetime, ISO 8601 or the usual written forms such as
    01/15/2024, into unix seconds. Naive values are taken to be UTC. Returns
    None when the string is not a date.
    """
    try:
        t = dateutil.parser.parse(s, default=_default_date)
    except (ValueError, OverflowError):
        return None
    if t.tzinfo is None:
        t = t.replace(tzinfo=datetime.timezone.utc)
    return t.timestamp()


def _parse_number(s: str) -> float | None:
    try:
        return float(s)
    except ValueError:
        return None


def _days_ago(now: float, days: str) -> float | None:
    n = _parse_number(days)
    return None if n is None else now - n * 86400


def _gt(v: str, values: list[str], now: float) -> bool:
    n, limit = _parse_number(v), _parse_number(values[0])
    return n is not None and limit is not None and n > limit


def _lt(v: str, values: list[str], now: float) -> bool:
    n, limit = _parse_number(v), _parse_number(values[0])
    return n is not None and limit is not None and n < limit


def _after(v: str, values: list[str], now: float) -> bool:
    t, since = _parse_timestamp(v), _days_ago(now, values[0])
    return t is not None and since is not None and t > since


def _before(v: str, values: list[str], now: float) -> bool:
    t, since = _parse_timestamp(v), _days_ago(now, values[0])
    return t is not None and since is not None and t < since


def _date_after(v: str, values: list[str], now: float) -> bool:
    t, date = _parse_timestamp(v), _parse_timestamp(values[0])
    return t is not None and date is not None and t >= date


def _date_before(v: str, values: list[str], now: float) -> bool:
    t, date = _parse_timestamp(v), _parse_timestamp(values[0])
    return t is not None and date is not None and t <= date


_operators: dict[str, Callable[[str, list[str], float], bool]] = {
    "IS": lambda v, values, now: v == values[0],
    "IS_NOT": lambda v, values, now: v != values[0],
    "ANY_OF": lambda v, values, now: v in values,
    "NOT_ANY_OF": lambda v, values, now: v not in values,
    "CONTAINS": lambda v, values, now: values[0].lower() in v.lower(),
    "NOT_CONTAINS": lambda v, values, now: values[0].lower() not in v.lower(),
    "GT": _gt,
    "LT": _lt,
    "AFTER": _after,
    "BEFORE": _before,
    "DATE_AFTER": _date_after,
    "DATE_BEFORE": _date_before,
    "SET": lambda v, values, now: v != "",
    "NOT_SET": lambda v, values, now: v == "",
    "IS_TRUE": lambda v, values, now: v == "true",
    "IS_FALSE": lambda v, values, now: v == "false",
}

OPERATORS = frozenset(_operators)

# Absence of the field is exactly what these operators test, so it is not
# reported as missing.
_presence_operators = frozenset({"SET", "NOT_SET"})

# An absent value is not equal to, not in and does not contain anything.
_match_on_absence = frozenset({"IS_NOT", "NOT_ANY_OF", "NOT_CONTAINS", "NOT_SET"})

_valueless_operators = frozenset({"SET", "NOT_SET", "IS_TRUE", "IS_FALSE"})


class RuleFilter:
    """
    A node in a targeting filter tree. Trees are built by parse_filter from
    JSON and are therefore always finite and acyclic.
    """

    __slots__ = ()

    @abstractmethod
    def match(self, context: FlatContext, missing: MissingFields, now: float) -> bool:
        """
        Evaluate the filter against the flattened context. Names of fields the
        filter needed but the context lacks are added to `missing`.
        """


class ContextFilter(RuleFilter):
    __slots__ = ("field", "operator", "values")

    def __init__(self, field: str, operator: str, values: list[str]):
        self.field = field
        self.operator = operator
        self.values = values

    def match(self, context: FlatContext, missing: MissingFields, now: float) -> bool:
        if self.field not in context:
            if self.operator not in _presence_operators:
                missing[self.field] = None
            return self.operator in _match_on_absence
        v = context[self.field]
        # Only empty mappings and lists are kept as leaves; they compare as "".
        s = "" if isinstance(v, (dict, list)) else stringify(v)
        return _operators[self.operator](s, self.values, now)


class GroupFilter(RuleFilter):
    __slots__ = ("operator", "filters")

    def __init__(self, operator: str, filters: list[RuleFilter]):
        self.operator = operator
        self.filters = filters

    def match(self, context: FlatContext, missing: MissingFields, now: float) -> bool:
        # Every child is evaluated, even once the outcome is known, so that
        # missing fields are reported for the whole group.
        results = [f.match(context, missing, now) for f in self.filters]
        if self.operator == "and":
            return all(results)
        return any(results)


class NegationFilter(RuleFilter):
    __slots__ = ("filter",)

    def __init__(self, filter: RuleFilter):
        self.filter = filter

    def match(self, context: FlatContext, missing: MissingFields, now: float) -> bool:
        return not self.filter.match(context, missing, now)


class RolloutFilter(RuleFilter):
    __slots__ = ("key", "attribute", "threshold")

    def __init__(self, key: str, attribute: str, threshold: int | float):
        self.key = key
        self.attribute = attribute
        self.threshold = threshold

    def match(self, context: FlatContext, missing: MissingFields, now: float) -> bool:
        if self.attribute not in context:
            missing[self.attribute] = None
            return False
        return in_rollout(self.key, context[self.attribute], self.threshold / ROLLOUT_SCALE)


class ConstantFilter(RuleFilter):
    __slots__ = ("value",)

    def __init__(self, value: bool):
        self.value = value

    def match(self, context: FlatContext, missing: MissingFields, now: float) -> bool:
        return self.value


def _parse_context_filter(f: Mapping[str, Any]) -> ContextFilter:
    field = f.get("field")
    if not isinstance(field, str) or not field:
        raise ValueError("context filter field must be a non-empty string")
    op = f.get("operator")
    if op not in _operators:
        raise ValueError(f"unknown operator {op!r} for field {field}")

    raw = f.get("values")
    if raw is None:
        # Older definitions carry a single "value".
        raw = [f["value"]] if f.get("value") is not None else []
    if not isinstance(raw, list):
        raise ValueError(f"values of field {field} must be a list")
    values = [stringify(v) for v in raw]

    if op not in _valueless_operators and not values:
        raise ValueError(f"operator {op} on field {field} requires a value")
    # An unusable comparison value only disables this filter, the rest of the
    # definitions still load.
    match op:
        case "GT" | "LT" | "AFTER" | "BEFORE":
            if _parse_number(values[0]) is None:
                logger.warning("operator %s on field %s has non-numeric value %r and never matches", op, field, values[0])
        case "DATE_AFTER" | "DATE_BEFORE":
            if _parse_timestamp(values[0]) is None:
                logger.warning("operator %s on field %s has invalid date %r and never matches", op, field, values[0])
        case _:
            pass
    return ContextFilter(field, op, values)


def parse_filter(f: Mapping[str, Any] | RuleFilter) -> RuleFilter:
    """
    Build a filter tree from its JSON form. Malformed filters raise ValueError
    describing the first problem found.
    """
    if isinstance(f, RuleFilter):
        return f
    if not isinstance(f, Mapping):
        raise ValueError(f"filter must be an object, not {type(f).__name__}")

    match f.get("type"):
        case "context":
            return _parse_context_filter(f)
        case "group":
            op = f.get("operator")
            if op not in {"and", "or"}:
                raise ValueError(f"group operator must be 'and' or 'or', not {op!r}")
            children = f.get("filters")
            if not isinstance(children, list):
                raise ValueError("group filters must be a list")
            return GroupFilter(op, [parse_filter(c) for c in children])
        case "negation":
            return NegationFilter(parse_filter(f.get("filter")))
        case "rolloutPercentage":
            key = f.get("key")
            attribute = f.get("partialRolloutAttribute")
            threshold = f.get("partialRolloutThreshold")
            if not isinstance(key, str) or not isinstance(attribute, str):
                raise ValueError("rollout filter requires a key and partialRolloutAttribute")
            if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or not 0 <= threshold <= ROLLOUT_SCALE:
                raise ValueError(f"partialRolloutThreshold must be a number within [0, {ROLLOUT_SCALE}], not {threshold!r}")
            return RolloutFilter(key, attribute, threshold)
        case "constant":
            value = f.get("value")
            if not isinstance(value, bool):
                raise ValueError(f"constant filter value must be a boolean, not {value!r}")
            return ConstantFilter(value)
        case t:
            raise ValueError(f"unknown filter type {t!r}")


def match_filter(
    filter: Mapping[str, Any] | RuleFilter,
    context: FlatContext,
    now: float | None = None,
) -> tuple[bool, list[str]]:
    """
    Evaluate a single filter against an already flattened context and return
    the result along with the fields that were referenced but missing.
    """
    if not isinstance(context, Mapping):
        raise TypeError(f"context must be a mapping, not {type(context).__name__}")
    missing: MissingFields = {}
    result = parse_filter(filter).match(context, missing, time.time() if now is None else now)
    return result, list(missing)
