from __future__ import annotations
import json
import logging
import time
from abc import abstractmethod
from collections.abc import Callable, Iterable, Mapping
from hashlib import md5
from typing import Any

import jsonschema
from prometheus_client import Histogram

from .buffer import BatchBuffer, BufferClosedError, TimerFactory, start_timer
from .cache import DefinitionCache
from .config import ClientOptions
from .evaluation import ConfigSelection, DictDefinitions, FeatureDefinitions, FeatureEvaluation, evaluate_feature
from .filters import FlatContext, flatten_context
from .ratelimit import RateLimiter


logger = logging.getLogger(__name__)

type Event = dict[str, Any]


class DefinitionsSource:
    """
    Where feature definitions come from, usually the definitions endpoint of the
    API. Transport and authentication are up to the implementation.
    """

    @abstractmethod
    def fetch_definitions(self) -> DictDefinitions | None:
        """
        Return the definitions payload, {"flags": [...]}, or None if it could
        not be fetched. Raising is treated the same as returning None.
        """


class EventSink:
    """
    Where telemetry events are delivered, usually the bulk events endpoint of
    the API.
    """

    @abstractmethod
    def deliver(self, events: list[Event]) -> bool:
        """
        Deliver a batch of events. Return False or raise if the batch should be
        retried.
        """


_prom_labels = ["feature", "value", "reason"]
_prom_eval_duration = Histogram(
    "targetflag_evaluation_seconds",
    "Feature evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=_prom_labels,
)


class Feature:
    """
    A feature as seen by the caller, after overrides.
    """

    __slots__ = ("key", "is_enabled", "config", "targeting_version", "_track")
    key: str
    is_enabled: bool
    config: ConfigSelection
    targeting_version: int | None

    def __init__(self, key, is_enabled, config, targeting_version, track: Callable[[str, Mapping[str, Any] | None], bool]):
        self.key = key
        self.is_enabled = is_enabled
        self.config = config
        self.targeting_version = targeting_version
        self._track = track

    def track(self, attributes: Mapping[str, Any] | None = None) -> bool:
        """
        Track usage of the feature. The feature key is used as the event name.
        """
        return self._track(self.key, attributes)


class FeatureSet:
    """
    Read-only collection of evaluated features. Every get() of an existing
    feature is reported to `on_read`, which lets the client know which features
    are actually checked.
    """

    __slots__ = ("_features", "_on_read")

    def __init__(self, features: dict[str, Feature], on_read: Callable[[Feature], None]):
        self._features = features
        self._on_read = on_read

    def get(self, key: str) -> Feature | None:
        f = self._features.get(key)
        if f is not None:
            self._on_read(f)
        return f

    def keys(self) -> list[str]:
        return list(self._features)

    def __len__(self) -> int:
        return len(self._features)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """
        Plain snapshot of all features. Does not count as checking them.
        """
        return {k: {"is_enabled": f.is_enabled, "config": f.config.to_dict()} for k, f in self._features.items()}


def _config_from_override(o: Mapping[str, Any], reason: str) -> ConfigSelection:
    config = o.get("config")
    if not config:
        return ConfigSelection(reason=reason)
    return ConfigSelection(config["key"], config.get("payload"), reason=reason)


def _fingerprint(*parts: Any) -> str:
    return md5(json.dumps(parts, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def _entity_id(context: Mapping[str, Any], entity: str) -> str | int | None:
    e = context.get(entity)
    if isinstance(e, Mapping):
        return e.get("id")
    return None


class Client:
    """
    Evaluates features against cached definitions and reports evaluations,
    checks and tracked events to the event sink in batches.

    The client owns its definition cache, event buffer and rate limiter: they
    are created with the client and torn down by close(). The client is
    thread-safe.
    """

    def __init__(
        self,
        source: DefinitionsSource,
        sink: EventSink,
        options: ClientOptions | Mapping[str, Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: TimerFactory = start_timer,
    ):
        if not isinstance(options, ClientOptions):
            options = ClientOptions.from_dict(options or {})
        self._options = options
        self._source = source
        self._sink = sink
        self._closed = False

        self._cache: DefinitionCache[FeatureDefinitions] = DefinitionCache(
            self._fetch_definitions,
            refetch_interval=options.refetch_interval_seconds,
            stale_warning_interval=options.stale_warning_seconds,
            clock=clock,
        )
        self._buffer: BatchBuffer[Event] = BatchBuffer(
            self._sink.deliver,
            max_size=options.batch_max_size,
            interval_seconds=options.batch_interval_seconds,
            retry_interval_seconds=options.batch_retry_interval_seconds,
            max_retries=options.batch_max_retries,
            timer_factory=timer_factory,
        )
        self._rate_limiter = RateLimiter(
            options.events_per_window,
            window_seconds=options.rate_limit_window_seconds,
            clock=clock,
        )

    @property
    def options(self) -> ClientOptions:
        return self._options

    @property
    def definitions(self) -> FeatureDefinitions | None:
        return self._cache.get()

    def _fetch_definitions(self) -> FeatureDefinitions | None:
        raw = self._source.fetch_definitions()
        if raw is None:
            return None
        try:
            return FeatureDefinitions.from_dict(raw)
        except (jsonschema.ValidationError, ValueError, TypeError):
            logger.exception("received invalid feature definitions")
            return None

    def initialize(self):
        """
        Fetch the definitions once and keep refreshing them in the background.
        """
        self._check_open()
        if self._options.offline:
            logger.info("offline mode, not fetching feature definitions")
            return
        self._cache.refresh()
        self._cache.start()

    def refresh(self) -> FeatureDefinitions | None:
        """
        Fetch the definitions now.
        """
        self._check_open()
        if self._options.offline:
            return None
        return self._cache.refresh()

    def flush(self):
        """
        Deliver all buffered events now.
        """
        if self._options.offline:
            return
        self._buffer.flush()

    def close(self):
        """
        Stop refreshing definitions and deliver the remaining events. The client
        can't be used afterwards.
        """
        if self._closed:
            return
        self._closed = True
        self._cache.stop()
        if not self._options.offline:
            self._buffer.close()
        self._rate_limiter.clear()

    def _check_open(self):
        if self._closed:
            raise RuntimeError("client is closed")

    def _enqueue(self, event: Event):
        if self._options.offline:
            return
        # Features read after close, or while closing, are still served.
        if self._closed:
            logger.debug("client is closed, not sending %s event", event["type"])
            return
        try:
            self._buffer.add(event)
        except BufferClosedError:
            logger.debug("client closed while sending %s event", event["type"])

    def _send_feature_event(
        self,
        action: str,
        key: str,
        version: int | None,
        result: Any,
        context: FlatContext | None,
        rule_results: list[bool] | None = None,
        missing: list[str] | None = None,
    ):
        # Identical events for the same context are only sent once per window.
        if not self._rate_limiter.is_allowed(_fingerprint(action, key, version, result, context)):
            return
        self._enqueue(
            {
                "type": "feature-flag-event",
                "action": action,
                "key": key,
                "targetingVersion": version,
                "evalResult": result,
                "evalContext": context,
                "evalRuleResults": rule_results,
                "evalMissingFields": missing,
            }
        )

    def _send_evaluations(self, e: FeatureEvaluation):
        ev = e.evaluation
        if ev is None:
            return
        self._send_feature_event(
            "evaluate",
            e.key,
            e.targeting_version,
            e.is_enabled,
            ev.context,
            ev.rule_evaluation_results,
            ev.missing_context_fields,
        )
        if ev.flag.variants:
            c = e.config
            self._send_feature_event(
                "evaluate-config",
                e.key,
                c.version,
                c.to_dict(),
                ev.context,
                c.rule_evaluation_results,
                c.missing_context_fields,
            )

    def _send_checks(self, f: Feature, context: FlatContext):
        self._send_feature_event("check", f.key, f.targeting_version, f.is_enabled, context)
        if f.config.key is not None:
            self._send_feature_event("check-config", f.key, f.config.version, f.config.to_dict(), context)

    def _evaluate(
        self,
        context: Mapping[str, Any],
        keys: Iterable[str] | None,
        enable_tracking: bool,
        now: float | None,
    ) -> tuple[dict[str, FeatureEvaluation], FlatContext]:
        flat = flatten_context(context)
        evaluations: dict[str, FeatureEvaluation] = {}

        definitions = None if self._options.offline else self._cache.get()
        if definitions is None:
            if not self._options.offline:
                logger.warning("no feature definitions cached yet, using fallback features")
            for key, fb in self._options.fallback_features.items():
                evaluations[key] = FeatureEvaluation(key, fb["is_enabled"], None, _config_from_override(fb, "fallback"), [])
        else:
            now = time.time() if now is None else now
            flags = definitions.flags
            if keys is not None:
                flags = {k: flags[k] for k in keys if k in flags}
            for key, flag in flags.items():
                start = time.perf_counter()
                e = evaluate_feature(flag, flat, now)
                dur = time.perf_counter() - start
                _prom_eval_duration.labels(feature=key, value=str(e.is_enabled), reason=e.evaluation.reason).observe(dur)
                evaluations[key] = e
                if enable_tracking:
                    self._send_evaluations(e)

        for key, o in self._options.feature_overrides.items():
            if keys is not None and key not in keys:
                continue
            prev = evaluations.get(key)
            evaluations[key] = FeatureEvaluation(
                key,
                o["is_enabled"],
                prev.targeting_version if prev else None,
                _config_from_override(o, "override"),
                prev.missing_context_fields if prev else [],
                prev.evaluation if prev else None,
            )

        if keys is not None:
            evaluations = {k: v for k, v in evaluations.items() if k in keys}
        return evaluations, flat

    def get_features(
        self,
        context: Mapping[str, Any],
        enable_tracking: bool = True,
        now: float | None = None,
    ) -> FeatureSet:
        """
        Evaluate all features for the given context.

        context: {"user": {...}, "company": {...}, "other": {...}}.
        enable_tracking: Whether evaluations and checks are reported.
        now: Unix seconds used by relative date operators. Defaults to current time.
        """
        self._check_open()
        evaluations, flat = self._evaluate(context, None, enable_tracking, now)

        def track(event: str, attributes: Mapping[str, Any] | None) -> bool:
            return self.track(event, context, attributes)

        features = {k: Feature(k, e.is_enabled, e.config, e.targeting_version, track) for k, e in evaluations.items()}

        def on_read(f: Feature):
            if enable_tracking:
                self._send_checks(f, flat)

        return FeatureSet(features, on_read)

    def get_feature(
        self,
        context: Mapping[str, Any],
        key: str,
        enable_tracking: bool = True,
        now: float | None = None,
    ) -> Feature:
        """
        Evaluate a single feature. Unknown features are disabled and have no
        config.
        """
        self._check_open()
        if not isinstance(key, str) or not key:
            raise TypeError("feature key must be a non-empty string")
        evaluations, flat = self._evaluate(context, [key], enable_tracking, now)
        e = evaluations.get(key)

        def track(event: str, attributes: Mapping[str, Any] | None) -> bool:
            return self.track(event, context, attributes)

        if e is None:
            logger.debug("feature %s is not defined", key)
            return Feature(key, False, ConfigSelection(), None, track)
        f = Feature(key, e.is_enabled, e.config, e.targeting_version, track)
        if enable_tracking:
            self._send_checks(f, flat)
        return f

    def track(
        self,
        event: str,
        context: Mapping[str, Any],
        attributes: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Track an event for the user in the context. Returns False if the context
        has no user to attribute the event to.
        """
        self._check_open()
        if not isinstance(event, str) or not event:
            raise TypeError("event must be a non-empty string")
        if attributes is not None and not isinstance(attributes, Mapping):
            raise TypeError(f"attributes must be a mapping, not {type(attributes).__name__}")
        user_id = _entity_id(context, "user")
        if user_id is None:
            logger.warning("no user in context, cannot track event %s", event)
            return False
        self._enqueue(
            {
                "type": "event",
                "event": event,
                "userId": user_id,
                "companyId": _entity_id(context, "company"),
                "attributes": dict(attributes) if attributes else None,
            }
        )
        return True

    @staticmethod
    def _validate_id(name: str, id: Any):
        if isinstance(id, bool) or not isinstance(id, (str, int)) or id == "":
            raise TypeError(f"{name} must be a non-empty string or an int")

    def update_user(self, user_id: str | int, attributes: Mapping[str, Any] | None = None):
        """
        Send updated attributes of a user.
        """
        self._check_open()
        self._validate_id("user_id", user_id)
        self._enqueue({"type": "user", "userId": user_id, "attributes": dict(attributes or {})})

    def update_company(
        self,
        company_id: str | int,
        attributes: Mapping[str, Any] | None = None,
        user_id: str | int | None = None,
    ):
        """
        Send updated attributes of a company, optionally associating a user
        with it.
        """
        self._check_open()
        self._validate_id("company_id", company_id)
        if user_id is not None:
            self._validate_id("user_id", user_id)
        self._enqueue({"type": "company", "companyId": company_id, "userId": user_id, "attributes": dict(attributes or {})})
