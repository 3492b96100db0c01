from __future__ import annotations
import json
import os
from collections.abc import Mapping
from copy import deepcopy
from typing import Any

import jsonschema


type DictOptions = dict[str, Any]

with open(os.path.join(os.path.dirname(__file__), "options_schema.json")) as f:
    _options_schema = json.load(f)

DEFAULT_OPTIONS: DictOptions = {
    "offline": False,
    "feature_overrides": {},
    "fallback_features": [],
    "cache": {
        "refetch_interval_seconds": 60,
        # None means five times the refetch interval.
        "stale_warning_seconds": None,
    },
    "batch": {
        "max_size": 100,
        "interval_seconds": 10,
        "retry_interval_seconds": 60,
        "max_retries": 3,
    },
    "rate_limit": {
        "events_per_window": 1,
        "window_seconds": 60,
    },
}

# Keys whose values are mappings merged one level deep. All other keys are
# replaced wholesale.
_merged_sections = frozenset({"feature_overrides", "cache", "batch", "rate_limit"})


def merge_options(*options: Mapping[str, Any]) -> DictOptions:
    """
    Merge the given option dicts into one. Later dicts take precedence. Only
    the known sections are merged, and only one level deep; everything else
    is replaced. Values are deep copied.

    This merge does not check keys or types. The canonical way of ensuring
    valid options is by building them with ClientOptions.from_dict.
    """
    merged: DictOptions = {}
    for o in options:
        if not isinstance(o, Mapping):
            raise TypeError(f"options must be a mapping, not {type(o).__name__}")
        for key, value in o.items():
            if key in _merged_sections and isinstance(value, Mapping) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **deepcopy(dict(value))}
            else:
                merged[key] = deepcopy(value)
    return merged


type Override = bool | dict[str, Any]


def _normalize_override(value: Override) -> dict[str, Any]:
    if isinstance(value, bool):
        return {"is_enabled": value, "config": None}
    return {"is_enabled": value["is_enabled"], "config": value.get("config")}


class ClientOptions:
    """
    Validated client options. Build with ClientOptions.from_dict.
    """

    __slots__ = (
        "offline",
        "feature_overrides",
        "fallback_features",
        "refetch_interval_seconds",
        "stale_warning_seconds",
        "batch_max_size",
        "batch_interval_seconds",
        "batch_retry_interval_seconds",
        "batch_max_retries",
        "events_per_window",
        "rate_limit_window_seconds",
    )
    offline: bool
    # Feature key to {"is_enabled": bool, "config": {"key", "payload"} | None}.
    feature_overrides: dict[str, dict[str, Any]]
    # Same shape as feature_overrides. Used while no definitions are cached.
    fallback_features: dict[str, dict[str, Any]]
    refetch_interval_seconds: float
    stale_warning_seconds: float
    batch_max_size: int
    batch_interval_seconds: float
    batch_retry_interval_seconds: float
    batch_max_retries: int
    events_per_window: int
    rate_limit_window_seconds: float

    @staticmethod
    def from_dict(*options: Mapping[str, Any]) -> ClientOptions:
        """
        Merge the given option dicts over the defaults and validate the result.
        """
        o = merge_options(DEFAULT_OPTIONS, *options)
        jsonschema.validate(o, _options_schema)

        co = ClientOptions()
        co.offline = o["offline"]
        co.feature_overrides = {k: _normalize_override(v) for k, v in o["feature_overrides"].items()}
        fallback = o["fallback_features"]
        if isinstance(fallback, list):
            fallback = {k: True for k in fallback}
        co.fallback_features = {k: _normalize_override(v) for k, v in fallback.items()}

        cache = o["cache"]
        co.refetch_interval_seconds = cache["refetch_interval_seconds"]
        stale = cache.get("stale_warning_seconds")
        co.stale_warning_seconds = stale if stale is not None else co.refetch_interval_seconds * 5

        batch = o["batch"]
        co.batch_max_size = batch["max_size"]
        co.batch_interval_seconds = batch["interval_seconds"]
        co.batch_retry_interval_seconds = batch["retry_interval_seconds"]
        co.batch_max_retries = batch["max_retries"]

        rate_limit = o["rate_limit"]
        co.events_per_window = rate_limit["events_per_window"]
        co.rate_limit_window_seconds = rate_limit["window_seconds"]
        return co
