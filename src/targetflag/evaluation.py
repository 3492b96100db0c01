from __future__ import annotations
import json
import logging
import os
import time
from collections.abc import Iterable, Mapping
from typing import Any, Literal

import dill
import jsonschema

from .filters import FlatContext, MissingFields, RuleFilter, flatten_context, parse_filter


logger = logging.getLogger(__name__)

type DictDefinitions = dict[str, Any]

with open(os.path.join(os.path.dirname(__file__), "definitions_schema.json")) as f:
    _definitions_schema = json.load(f)


class ConfigVariant:
    """
    One remote config value of a feature, selected by its filter.
    """

    __slots__ = ("key", "filter", "payload", "default")
    key: str
    filter: RuleFilter
    payload: Any
    default: bool

    def __init__(self, key: str, filter: RuleFilter, payload: Any = None, default: bool = False):
        self.key = key
        self.filter = filter
        self.payload = payload
        self.default = default

    @staticmethod
    def from_dict(v: Mapping[str, Any]) -> ConfigVariant:
        if not isinstance(v, Mapping):
            raise ValueError(f"config variant must be an object, not {type(v).__name__}")
        key = v.get("key")
        if not isinstance(key, str) or not key:
            raise ValueError("config variant key must be a non-empty string")
        if "filter" not in v:
            raise ValueError(f"config variant {key} must have a filter")
        default = v.get("default", False)
        if not isinstance(default, bool):
            raise ValueError(f"default of config variant {key} must be a boolean, not {default!r}")
        return ConfigVariant(key, parse_filter(v["filter"]), v.get("payload"), default)


class FlagDefinition:
    """
    The targeting rules of a feature and, optionally, its remote config
    variants. Rules are ordered and the first matching rule enables the flag.
    """

    __slots__ = ("key", "targeting_version", "rules", "config_version", "variants")
    key: str
    targeting_version: int | None
    rules: list[RuleFilter]
    config_version: int | None
    variants: list[ConfigVariant]

    def __init__(
        self,
        key: str,
        rules: list[RuleFilter],
        targeting_version: int | None = None,
        variants: list[ConfigVariant] | None = None,
        config_version: int | None = None,
    ):
        self.key = key
        self.rules = rules
        self.targeting_version = targeting_version
        self.variants = variants or []
        self.config_version = config_version

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> FlagDefinition:
        key = d.get("key")
        if not isinstance(key, str) or not key:
            raise ValueError("flag key must be a non-empty string")
        rules = d.get("rules")
        if not isinstance(rules, list):
            raise ValueError(f"rules of flag {key} must be a list")
        try:
            filters = [parse_filter(r["filter"]) for r in rules]
        except (KeyError, TypeError):
            raise ValueError(f"every rule of flag {key} must have a filter") from None

        config = d.get("config") or {}
        if not isinstance(config, Mapping):
            raise ValueError(f"config of flag {key} must be an object, not {type(config).__name__}")
        raw_variants = config.get("variants", [])
        if not isinstance(raw_variants, list):
            raise ValueError(f"config variants of flag {key} must be a list")
        variants = [ConfigVariant.from_dict(v) for v in raw_variants]
        defaults = [v.key for v in variants if v.default]
        if len(defaults) > 1:
            raise ValueError(f"flag {key} has more than one default config variant: {defaults}")
        if len(set(v.key for v in variants)) != len(variants):
            raise ValueError(f"flag {key} has duplicate config variant keys")

        return FlagDefinition(
            key,
            filters,
            targeting_version=d.get("targetingVersion"),
            variants=variants,
            config_version=config.get("version"),
        )


class EvaluationResult:
    """
    The outcome of evaluating the targeting rules of a flag for one context.
    """

    __slots__ = (
        "value",
        "flag",
        "context",
        "rule_evaluation_results",
        "missing_context_fields",
        "reason",
    )
    value: bool
    flag: FlagDefinition
    # The flattened context the flag was evaluated against.
    context: FlatContext
    # Result of every rule, in rule order, including those after the first match.
    rule_evaluation_results: list[bool]
    missing_context_fields: list[str]
    reason: str

    def __init__(self, value, flag, context, rule_evaluation_results, missing_context_fields, reason):
        self.value = value
        self.flag = flag
        self.context = context
        self.rule_evaluation_results = rule_evaluation_results
        self.missing_context_fields = missing_context_fields
        self.reason = reason


class ConfigSelection:
    """
    The remote config selected for a context. A selection with no key means the
    feature has no config for that context, which is not an error.
    """

    __slots__ = (
        "key",
        "payload",
        "default",
        "version",
        "reason",
        "rule_evaluation_results",
        "missing_context_fields",
    )
    key: str | None
    payload: Any
    # True when no variant matched and the default variant was used instead.
    default: bool
    version: int | None
    reason: Literal["default variant", "no matched rules"] | str
    rule_evaluation_results: list[bool]
    missing_context_fields: list[str]

    def __init__(
        self,
        key: str | None = None,
        payload: Any = None,
        default: bool = False,
        version: int | None = None,
        reason: str = "no matched rules",
        rule_evaluation_results: list[bool] | None = None,
        missing_context_fields: list[str] | None = None,
    ):
        self.key = key
        self.payload = payload
        self.default = default
        self.version = version
        self.reason = reason
        self.rule_evaluation_results = rule_evaluation_results or []
        self.missing_context_fields = missing_context_fields or []

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "payload": self.payload}


class FeatureEvaluation:
    """
    The combined targeting and remote config result of a feature.
    """

    __slots__ = ("key", "is_enabled", "targeting_version", "config", "missing_context_fields", "evaluation")
    key: str
    is_enabled: bool
    targeting_version: int | None
    config: ConfigSelection
    missing_context_fields: list[str]
    evaluation: EvaluationResult | None

    def __init__(self, key, is_enabled, targeting_version, config, missing_context_fields, evaluation=None):
        self.key = key
        self.is_enabled = is_enabled
        self.targeting_version = targeting_version
        self.config = config
        self.missing_context_fields = missing_context_fields
        self.evaluation = evaluation


def _evaluate_rules(filters: Iterable[RuleFilter], context: FlatContext, now: float) -> tuple[list[bool], list[str], int | None]:
    """
    Evaluate every filter in order. Returns the per-filter results, the union of
    missing fields and the index of the first match, if any.
    """
    missing: MissingFields = {}
    results = [f.match(context, missing, now) for f in filters]
    first = next((i for i, r in enumerate(results) if r), None)
    return results, list(missing), first


def _reason(first: int | None) -> str:
    return "no matched rules" if first is None else f"rule #{first} matched"


def evaluate_flag(flag: FlagDefinition | Mapping[str, Any], context: Mapping[str, Any], now: float | None = None) -> EvaluationResult:
    """
    Evaluate the targeting rules of the flag for the given context. Flags are
    disabled unless a rule matches.

    flag: The flag definition, or its JSON form.
    context: The nested or already flattened context.
    now: Unix seconds used by relative date operators. Defaults to current time.
    """
    if not isinstance(flag, FlagDefinition):
        flag = FlagDefinition.from_dict(flag)
    flat = flatten_context(context)
    results, missing, first = _evaluate_rules(flag.rules, flat, time.time() if now is None else now)
    return EvaluationResult(first is not None, flag, flat, results, missing, _reason(first))


def select_config_variant(
    variants: Iterable[ConfigVariant | Mapping[str, Any]],
    context: Mapping[str, Any],
    now: float | None = None,
    version: int | None = None,
) -> ConfigSelection:
    """
    Select the first config variant whose filter matches the context, falling
    back to the default variant.
    """
    variants = [v if isinstance(v, ConfigVariant) else ConfigVariant.from_dict(v) for v in variants]
    flat = flatten_context(context)
    results, missing, first = _evaluate_rules((v.filter for v in variants), flat, time.time() if now is None else now)

    if first is not None:
        v = variants[first]
        return ConfigSelection(v.key, v.payload, False, version, _reason(first), results, missing)

    default = next((v for v in variants if v.default), None)
    if default is not None:
        return ConfigSelection(default.key, default.payload, True, version, "default variant", results, missing)

    return ConfigSelection(None, None, False, version, "no matched rules", results, missing)


def evaluate_feature(flag: FlagDefinition, context: Mapping[str, Any], now: float | None = None) -> FeatureEvaluation:
    """
    Evaluate both the targeting and the remote config of a feature against the
    same context.
    """
    now = time.time() if now is None else now
    e = evaluate_flag(flag, context, now)
    if flag.variants:
        config = select_config_variant(flag.variants, e.context, now, flag.config_version)
    else:
        config = ConfigSelection(version=flag.config_version)
    missing = list(dict.fromkeys(e.missing_context_fields + config.missing_context_fields))
    return FeatureEvaluation(flag.key, e.value, flag.targeting_version, config, missing, e)


class FeatureDefinitions:
    """
    A compiled, read-only snapshot of all feature definitions. Snapshots are
    replaced wholesale and never modified once built.
    """

    __slots__ = ("flags",)
    flags: dict[str, FlagDefinition]

    @staticmethod
    def from_bytes(b: bytes) -> FeatureDefinitions:
        obj = dill.loads(b)
        assert isinstance(obj, FeatureDefinitions)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_dict(d: DictDefinitions) -> FeatureDefinitions:
        """
        Validate and compile the definitions payload, as returned by the
        definitions source, into a snapshot the evaluator can use.
        """
        jsonschema.validate(d, _definitions_schema)

        flags: dict[str, FlagDefinition] = {}
        for f in d["flags"]:
            flag = FlagDefinition.from_dict(f)
            if flag.key in flags:
                raise ValueError(f"duplicate flag {flag.key}")
            flags[flag.key] = flag

        fd = FeatureDefinitions()
        fd.flags = flags
        logger.debug("compiled %d feature definitions", len(flags))
        return fd

    def evaluate_all(self, context: Mapping[str, Any], now: float | None = None) -> dict[str, FeatureEvaluation]:
        """
        Evaluate every feature in the snapshot for the given context.
        """
        now = time.time() if now is None else now
        flat = flatten_context(context)
        return {key: evaluate_feature(flag, flat, now) for key, flag in self.flags.items()}
