"""
Gateway in front of model calls.

Composes the plan and quota gates, the content-addressed result cache,
single-flight deduplication, the structured model client and the request
audit log into one operation: invoke().

Order of a call:
1. Feature gate - denied before any quota or model cost is incurred
2. Quota gate - consumed even when the result is then served from cache
3. Cache lookup by derived key
4. On miss, one model call per key shared by concurrent callers
5. Cache write with the action's TTL
6. Audit entry, best-effort
"""

import json
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from ai_gateway.config.loader import GatewayConfig
from ai_gateway.core.audit import RequestAuditLog
from ai_gateway.core.cache_key import derive_cache_key, normalize_value, stable_stringify
from ai_gateway.core.categorization import (
    CATEGORIZE_RESPONSE_FORMAT,
    CategoryMapping,
    validate_category_mappings,
)
from ai_gateway.core.clock import Clock
from ai_gateway.core.errors import FeatureNotAvailable, QuotaExceeded
from ai_gateway.core.quota import QuotaDecision, UsageQuotaLedger
from ai_gateway.core.single_flight import SingleFlightRegistry
from ai_gateway.core.subscription import (
    ACTION_REQUIRED_FEATURES,
    SubscriptionLifecycle,
    UsageSummaryItem,
    get_plan_features,
)
from ai_gateway.core.token_counter import TokenUsage
from ai_gateway.logging_config import get_logger
from ai_gateway.sdk.openai_client import ModelCallConfig, StructuredOpenAI, StructuredResult
from ai_gateway.storage.cache import ResultCache, create_redis_client
from ai_gateway.storage.models import Subscription, UsageAction

logger = get_logger(__name__)

Validator = Callable[[Any], Any]


@dataclass(frozen=True)
class GatewayResult:
    """Result of one gateway invocation."""
    data: Any
    usage: Optional[TokenUsage]
    cache_hit: bool
    cache_key: str
    quota: QuotaDecision


class Gateway:
    """Gated, cached and deduplicated access to the model.

    All mutable coordination state (the single-flight registry) belongs to
    the instance, so separate instances never share in-flight calls.
    """

    def __init__(
        self,
        lifecycle: SubscriptionLifecycle,
        cache: ResultCache,
        model_client: StructuredOpenAI,
        audit_log: RequestAuditLog,
        config: Optional[GatewayConfig] = None,
        registry: Optional[SingleFlightRegistry] = None
    ):
        self.lifecycle = lifecycle
        self.cache = cache
        self.model_client = model_client
        self.audit_log = audit_log
        self.config = config or GatewayConfig.default()
        self.registry = registry or SingleFlightRegistry()

    @classmethod
    def from_config(cls, config: GatewayConfig, clock: Optional[Clock] = None) -> "Gateway":
        """Build a gateway and its collaborators from configuration.

        Args:
            config: Gateway configuration
            clock: Time source shared by the quota, lifecycle and audit components

        Returns:
            Ready-to-use Gateway
        """
        db_path = config.storage.db_path
        ledger = UsageQuotaLedger(db_path, clock)
        lifecycle = SubscriptionLifecycle(
            db_path,
            clock=clock,
            ledger=ledger,
            trial_duration_days=config.trial.duration_days
        )
        return cls(
            lifecycle=lifecycle,
            cache=ResultCache(create_redis_client(config.cache.redis_url)),
            model_client=StructuredOpenAI(timeout=config.model.timeout_seconds),
            audit_log=RequestAuditLog(db_path, clock),
            config=config
        )

    def model_call_config(self, system_message: str, prompt: str, **options: Any) -> ModelCallConfig:
        """Build a call configuration using the configured model by default.

        Args:
            system_message: System prompt
            prompt: User prompt
            **options: Any other ModelCallConfig field; model overrides
                config.model.name

        Returns:
            ModelCallConfig for invoke(), invoke_streamed() or categorize_items()
        """
        options.setdefault("model", self.config.model.name)
        return ModelCallConfig(system_message=system_message, prompt=prompt, **options)

    def invoke(
        self,
        user_id: str,
        action: UsageAction,
        cache_key_parts: Sequence[Any],
        model_config: ModelCallConfig,
        validator: Optional[Validator] = None
    ) -> GatewayResult:
        """Run one gated model request.

        Args:
            user_id: Requesting user
            action: Quota-limited action the request belongs to
            cache_key_parts: Values identifying the request's logical input
            model_config: Model call configuration
            validator: Optional check/transform applied to the parsed payload
                before it is cached; raise InvalidModelOutput to reject it

        Returns:
            GatewayResult with the payload and how it was obtained

        Raises:
            FeatureNotAvailable: If the plan lacks a feature the action needs
            QuotaExceeded: If today's quota for the action is used up
            UserNotFound: If the user does not exist
            StoreUnavailable: If quota or subscription storage fails
            ModelCallError: If the model call or validation fails
        """
        start_time = time.monotonic()
        audit_input = ""
        result: Optional[GatewayResult] = None
        error: Optional[Exception] = None
        owned_usage: Optional[TokenUsage] = None

        try:
            audit_input = _audit_input(cache_key_parts)
            quota = self._admit(user_id, action)
            cache_key = derive_cache_key(action.value, *cache_key_parts)

            cached, found = self.cache.get(cache_key, label=action.value)
            if found:
                result = GatewayResult(
                    data=cached,
                    usage=None,
                    cache_hit=True,
                    cache_key=cache_key,
                    quota=quota
                )
                return result

            logger.info("AI cache miss", cache_key=cache_key, action=action.value)
            ran_here = []

            def compute() -> StructuredResult:
                ran_here.append(True)
                return self._call_and_cache(cache_key, action, model_config, validator)

            structured = self.registry.dedup(cache_key, compute)
            if ran_here:
                owned_usage = structured.usage
            result = GatewayResult(
                data=structured.data,
                usage=structured.usage,
                cache_hit=False,
                cache_key=cache_key,
                quota=quota
            )
            return result
        except Exception as e:
            error = e
            raise
        finally:
            self._audit(
                user_id,
                action,
                audit_input,
                result,
                error,
                start_time,
                owned_usage
            )

    def invoke_streamed(
        self,
        user_id: str,
        action: UsageAction,
        cache_key_parts: Sequence[Any],
        model_config: ModelCallConfig,
        on_delta: Callable[[str], None],
        validator: Optional[Validator] = None
    ) -> GatewayResult:
        """Run one gated model request, streaming text deltas to on_delta.

        Gates and caching behave as in invoke(). A cache hit is delivered to
        on_delta as one JSON text chunk. Streamed calls are not shared
        between callers because every caller owns its own sink.

        Args:
            user_id: Requesting user
            action: Quota-limited action the request belongs to
            cache_key_parts: Values identifying the request's logical input
            model_config: Model call configuration
            on_delta: Receives text deltas as they arrive
            validator: Optional check/transform applied before caching

        Returns:
            GatewayResult with the parsed payload
        """
        start_time = time.monotonic()
        audit_input = ""
        result: Optional[GatewayResult] = None
        error: Optional[Exception] = None

        try:
            audit_input = _audit_input(cache_key_parts)
            quota = self._admit(user_id, action)
            cache_key = derive_cache_key(action.value, *cache_key_parts)

            cached, found = self.cache.get(cache_key, label=action.value)
            if found:
                on_delta(json.dumps(cached))
                result = GatewayResult(
                    data=cached,
                    usage=None,
                    cache_hit=True,
                    cache_key=cache_key,
                    quota=quota
                )
                return result

            logger.info("AI cache miss, streaming", cache_key=cache_key, action=action.value)
            structured = self.model_client.call_streamed(model_config, on_delta)
            data = validator(structured.data) if validator else structured.data
            self.cache.set(cache_key, data, self._ttl_for(action, model_config))
            result = GatewayResult(
                data=data,
                usage=structured.usage,
                cache_hit=False,
                cache_key=cache_key,
                quota=quota
            )
            return result
        except Exception as e:
            error = e
            raise
        finally:
            self._audit(
                user_id,
                action,
                audit_input,
                result,
                error,
                start_time,
                result.usage if result else None
            )

    def categorize_items(
        self,
        user_id: str,
        items: Sequence[Dict[str, Any]],
        categories: Sequence[Dict[str, Any]],
        model_config: ModelCallConfig
    ) -> List[CategoryMapping]:
        """Assign one category to every item in a batch.

        Args:
            user_id: Requesting user
            items: Items as {"id", "name"} dicts
            categories: Allowed categories as {"id", "name", ...} dicts
            model_config: Model call configuration carrying the prompt; the
                categorization JSON schema is used when no response_format
                is set

        Returns:
            One CategoryMapping per item; low-confidence assignments carry
            category_id None

        Raises:
            InvalidModelOutput: If the model's mappings do not cover the batch
                exactly once per item
        """
        if model_config.response_format is None:
            model_config = replace(model_config, response_format=CATEGORIZE_RESPONSE_FORMAT)

        item_ids = [str(item["id"]) for item in items]
        category_ids = [str(category["id"]) for category in categories]

        def validator(payload: Any) -> List[Dict[str, Any]]:
            mappings = validate_category_mappings(item_ids, category_ids, payload)
            return [mapping.to_dict() for mapping in mappings]

        result = self.invoke(
            user_id,
            UsageAction.SMART_GROUP,
            [{
                "model": model_config.model,
                "temp": model_config.temperature,
                "items": list(items),
                "categories": list(categories),
            }],
            model_config,
            validator=validator
        )
        return [
            CategoryMapping(
                item_id=raw["itemId"],
                category_id=raw["categoryId"],
                confidence=raw["confidence"]
            )
            for raw in result.data
        ]

    def get_usage_summary(self, user_id: str) -> List[UsageSummaryItem]:
        """Today's usage per action against the user's plan limits."""
        return self.lifecycle.get_usage_summary(user_id)

    def get_subscription(self, user_id: str) -> Subscription:
        """The user's current subscription."""
        return self.lifecycle.get_subscription(user_id)

    def sweep_expired_trials(self) -> int:
        """Demote expired trials; returns how many were demoted."""
        return self.lifecycle.sweep_expired_trials()

    def _admit(self, user_id: str, action: UsageAction) -> QuotaDecision:
        """Apply the feature gate, then consume one unit of quota."""
        subscription = self.lifecycle.get_subscription(user_id)

        feature = ACTION_REQUIRED_FEATURES.get(action)
        if feature and not getattr(get_plan_features(subscription.plan.type), feature):
            logger.info(
                "Feature not available on plan",
                user_id=user_id,
                feature=feature,
                plan=subscription.plan.type.value
            )
            raise FeatureNotAvailable(feature, subscription.plan.type.value)

        decision = self.lifecycle.ledger.check_and_increment(
            user_id,
            action,
            subscription.plan.limit_for(action)
        )
        if not decision.allowed:
            raise QuotaExceeded(action.value, decision.current, decision.limit)
        return decision

    def _call_and_cache(
        self,
        cache_key: str,
        action: UsageAction,
        model_config: ModelCallConfig,
        validator: Optional[Validator]
    ) -> StructuredResult:
        """Call the model, validate the payload and write it to the cache."""
        structured = self.model_client.call_structured(model_config)
        data = validator(structured.data) if validator else structured.data
        self.cache.set(cache_key, data, self._ttl_for(action, model_config))
        return StructuredResult(data=data, usage=structured.usage, attempts=structured.attempts)

    def _ttl_for(self, action: UsageAction, model_config: ModelCallConfig) -> int:
        return model_config.cache_ttl or self.config.cache_ttl_for(action)

    def _audit(
        self,
        user_id: str,
        action: UsageAction,
        audit_input: str,
        result: Optional[GatewayResult],
        error: Optional[Exception],
        start_time: float,
        usage: Optional[TokenUsage]
    ) -> None:
        """Write the audit entry for one invocation; never raises."""
        try:
            self.audit_log.record(
                user_id=user_id,
                action=action,
                input=audit_input,
                output=result.data if result else None,
                success=error is None and result is not None,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                error_message=_error_message(error),
                usage=usage,
                cache_hit=result.cache_hit if result else False
            )
        except Exception as e:
            logger.error("Audit logging failed", action=action.value, error=str(e))


def _audit_input(cache_key_parts: Sequence[Any]) -> str:
    try:
        return json.dumps(list(cache_key_parts), default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        # Non-string dict keys; fall back to the form the cache key hashes
        return stable_stringify(normalize_value(list(cache_key_parts)))


def _error_message(error: Optional[Exception]) -> Optional[str]:
    if error is None:
        return None
    return f"{type(error).__name__}: {error}"
