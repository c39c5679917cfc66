"""
Tests for the gateway composition: gates, caching, deduplication and audit.
"""

import json
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock, patch

import httpx
import openai
import pytest
import redis

from ai_gateway.config.loader import DEFAULT_PLAN_LIMITS, GatewayConfig, ModelConfig
from ai_gateway.core.audit import RequestAuditLog
from ai_gateway.core.categorization import CATEGORIZE_RESPONSE_FORMAT, CategoryMapping
from ai_gateway.core.clock import FixedClock
from ai_gateway.core.errors import (
    FeatureNotAvailable,
    InvalidModelOutput,
    ModelTimeout,
    QuotaExceeded,
    UserNotFound,
)
from ai_gateway.core.subscription import SubscriptionLifecycle
from ai_gateway.sdk.gateway import Gateway
from ai_gateway.sdk.openai_client import ModelCallConfig, StructuredOpenAI
from ai_gateway.storage.cache import ResultCache
from ai_gateway.storage.models import PlanType, SubscriptionStatus, UsageAction
from ai_gateway.storage.repository import (
    fetch_plans,
    initialize_schema,
    insert_subscription,
    insert_user,
    seed_plans,
)


class FakeRedis:
    """In-memory stand-in for the two Redis commands the cache uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.get_calls = []
        self.lock = threading.Lock()

    def get(self, key):
        with self.lock:
            self.get_calls.append(key)
            return self.data.get(key)

    def set(self, key, value, ex=None):
        with self.lock:
            self.data[key] = value
            self.ttls[key] = ex
        return True


class FakeStream:
    """Iterable chunk stream that records whether it was closed."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    def __iter__(self):
        return iter(self.chunks)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True
        return False


def make_completion(payload, total_tokens=30):
    content = payload if isinstance(payload, str) else json.dumps(payload)
    usage = SimpleNamespace(prompt_tokens=20, completion_tokens=total_tokens - 20, total_tokens=total_tokens)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=usage
    )


def make_chunk(content=None, usage=None):
    choices = [] if content is None else [SimpleNamespace(delta=SimpleNamespace(content=content))]
    return SimpleNamespace(choices=choices, usage=usage)


def model_config(**overrides):
    params = dict(
        model="gpt-4.1-mini",
        system_message="You are a cooking assistant. Reply with JSON.",
        prompt="Generate a recipe.",
        operation_name="generate_recipe"
    )
    params.update(overrides)
    return ModelCallConfig(**params)


def _wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


class GatewayTestCase:
    """Gateway over a temp database, a fake Redis and a mocked OpenAI client."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        seed_plans(DEFAULT_PLAN_LIMITS, self.db_path)

        self.clock = FixedClock(datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc))
        self.redis = FakeRedis()
        self.openai_client = Mock()
        self.create = self.openai_client.chat.completions.create
        self.create.return_value = make_completion({"title": "Pasta"})

        self.lifecycle = SubscriptionLifecycle(self.db_path, clock=self.clock)
        self.audit_log = RequestAuditLog(self.db_path, self.clock)
        self.gateway = Gateway(
            lifecycle=self.lifecycle,
            cache=ResultCache(self.redis),
            model_client=StructuredOpenAI(client=self.openai_client),
            audit_log=self.audit_log,
            config=GatewayConfig.default().with_db_path(self.db_path)
        )

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def create_user(self, user_id="user-1", plan=None):
        """Register a user; plan=PRO starts a trial, PREMIUM an active subscription."""
        insert_user(user_id, self.clock.now(), self.db_path)
        if plan == PlanType.PRO:
            self.lifecycle.create_trial_subscription(user_id)
        elif plan == PlanType.PREMIUM:
            insert_subscription(
                user_id,
                fetch_plans(self.db_path)[PlanType.PREMIUM].id,
                SubscriptionStatus.ACTIVE,
                self.clock.now(),
                None,
                db_path=self.db_path
            )
        return user_id

    def count(self, user_id, action):
        return self.lifecycle.ledger.get_count(user_id, action)


class TestGatewayInvoke(GatewayTestCase):
    """Test the gated, cached invoke path."""

    def test_trial_user_quota_end_to_end(self):
        user_id = self.create_user(plan=PlanType.PRO)

        pantries = [
            ["eggs", "flour"],
            ["milk", "oats"],
            ["rice", "beans"],
            ["tomato", "basil"],
            ["apple", "cinnamon"],
        ]

        for i, ingredients in enumerate(pantries):
            result = self.gateway.invoke(
                user_id, UsageAction.RECIPE_SUGGEST, [ingredients], model_config()
            )
            assert result.data == {"title": "Pasta"}
            assert result.cache_hit is False
            assert result.quota.current == i + 1

        with pytest.raises(QuotaExceeded) as exc_info:
            self.gateway.invoke(
                user_id, UsageAction.RECIPE_SUGGEST, [["potato", "leek"]], model_config()
            )

        assert exc_info.value.current == 5
        assert exc_info.value.limit == 5
        assert self.create.call_count == 5
        assert self.count(user_id, UsageAction.RECIPE_SUGGEST) == 5
        assert self.count(user_id, UsageAction.RECIPE_GENERATION) == 0

        entries = self.audit_log.recent(user_id=user_id)
        assert len(entries) == 6
        assert sum(1 for e in entries if e.success) == 5
        assert any(e.error_message.startswith("QuotaExceeded") for e in entries if not e.success)

    def test_suggestions_use_generation_limit_with_own_counter(self):
        user_id = self.create_user(plan=PlanType.PRO)
        for i in range(5):
            self.gateway.invoke(user_id, UsageAction.RECIPE_GENERATION, [i], model_config())

        result = self.gateway.invoke(user_id, UsageAction.RECIPE_SUGGEST, ["eggs"], model_config())

        assert result.quota.limit == 5
        assert result.quota.current == 1

    def test_feature_gate_runs_before_quota(self):
        user_id = self.create_user()

        with pytest.raises(FeatureNotAvailable) as exc_info:
            self.gateway.invoke(user_id, UsageAction.RECIPE_SUGGEST, ["eggs"], model_config())

        assert exc_info.value.feature == "can_suggest_recipes"
        assert exc_info.value.plan_type == "free"
        assert self.count(user_id, UsageAction.RECIPE_SUGGEST) == 0
        self.create.assert_not_called()
        assert self.audit_log.recent()[0].success is False

    def test_photo_parsing_requires_premium(self):
        pro_user = self.create_user("pro", plan=PlanType.PRO)
        premium_user = self.create_user("premium", plan=PlanType.PREMIUM)

        with pytest.raises(FeatureNotAvailable):
            self.gateway.invoke(pro_user, UsageAction.PARSE_IMAGE, ["img"], model_config())

        result = self.gateway.invoke(premium_user, UsageAction.PARSE_IMAGE, ["img"], model_config())
        assert result.quota.unlimited

    def test_unknown_user(self):
        with pytest.raises(UserNotFound):
            self.gateway.invoke("ghost", UsageAction.RECIPE_PARSE, ["x"], model_config())

    def test_cache_hit_still_consumes_quota(self):
        user_id = self.create_user()

        first = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["Pasta "], model_config())
        second = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["pasta"], model_config())

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert second.data == first.data
        assert second.cache_key == first.cache_key
        assert second.usage is None
        assert second.quota.current == 2
        assert self.create.call_count == 1

        entries = self.audit_log.recent(user_id=user_id)
        assert [e.cache_hit for e in entries] == [True, False]
        assert entries[0].total_tokens is None
        assert entries[1].total_tokens == 30

    def test_cache_ttl_per_action(self):
        user_id = self.create_user()

        parsed = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())
        generated = self.gateway.invoke(user_id, UsageAction.RECIPE_GENERATION, ["url"], model_config())
        custom = self.gateway.invoke(
            user_id, UsageAction.RECIPE_GENERATION, ["other"], model_config(cache_ttl=120)
        )

        assert self.redis.ttls[parsed.cache_key] == 21600
        assert self.redis.ttls[generated.cache_key] == 3600
        assert self.redis.ttls[custom.cache_key] == 120
        assert parsed.cache_key != generated.cache_key

    def test_cache_read_failure_falls_back_to_model(self):
        user_id = self.create_user()
        self.redis.get = Mock(side_effect=redis.ConnectionError("connection refused"))

        result = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())

        assert result.data == {"title": "Pasta"}
        assert result.cache_hit is False
        assert self.create.call_count == 1

    def test_cache_write_failure_still_returns_result(self):
        user_id = self.create_user()
        self.redis.set = Mock(side_effect=redis.ConnectionError("read only replica"))

        result = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())

        assert result.data == {"title": "Pasta"}

    def test_model_failure_consumes_quota_and_is_audited(self):
        user_id = self.create_user()
        self.create.side_effect = openai.APITimeoutError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )

        with pytest.raises(ModelTimeout):
            self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())

        assert self.count(user_id, UsageAction.RECIPE_PARSE) == 1
        assert self.redis.data == {}
        entry = self.audit_log.recent(user_id=user_id)[0]
        assert entry.success is False
        assert entry.error_message.startswith("ModelTimeout: ")

    def test_parse_retry_is_one_quota_unit(self):
        user_id = self.create_user()
        self.create.side_effect = [make_completion("{oops"), make_completion({"ok": True})]

        result = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())

        assert result.data == {"ok": True}
        assert self.create.call_count == 2
        assert self.count(user_id, UsageAction.RECIPE_PARSE) == 1

    def test_rejected_payload_is_not_cached(self):
        user_id = self.create_user()

        def reject(payload):
            raise InvalidModelOutput("missing ingredients")

        with pytest.raises(InvalidModelOutput):
            self.gateway.invoke(
                user_id, UsageAction.RECIPE_PARSE, ["url"], model_config(), validator=reject
            )

        assert self.redis.data == {}

    def test_validator_output_is_cached(self):
        user_id = self.create_user()

        result = self.gateway.invoke(
            user_id,
            UsageAction.RECIPE_PARSE,
            ["url"],
            model_config(),
            validator=lambda payload: {**payload, "validated": True}
        )

        assert result.data == {"title": "Pasta", "validated": True}
        assert json.loads(self.redis.data[result.cache_key]) == result.data

    def test_audit_failure_is_swallowed(self):
        user_id = self.create_user()

        with patch.object(self.audit_log, "record", side_effect=RuntimeError("log table gone")):
            result = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())

        assert result.data == {"title": "Pasta"}

    def test_non_string_dict_keys_are_keyed_and_audited(self):
        user_id = self.create_user()

        result = self.gateway.invoke(
            user_id, UsageAction.RECIPE_PARSE, [{("a", "b"): 1}], model_config()
        )

        assert result.data == {"title": "Pasta"}
        assert result.cache_key.startswith("ai:v1:recipe_parse:")
        entries = self.audit_log.recent(user_id=user_id)
        assert len(entries) == 1
        assert entries[0].success is True
        assert "('a', 'b')" in entries[0].input

    def test_cached_null_payload_is_a_hit(self):
        user_id = self.create_user()
        self.create.return_value = make_completion("null")

        first = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())
        second = self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())

        assert first.data is None
        assert first.cache_hit is False
        assert second.data is None
        assert second.cache_hit is True
        assert self.create.call_count == 1

    def test_concurrent_identical_requests_share_one_model_call(self):
        user_id = self.create_user(plan=PlanType.PREMIUM)
        release = threading.Event()

        def slow_completion(**kwargs):
            release.wait(5)
            return make_completion({"title": "Shared"})

        self.create.side_effect = slow_completion

        def call(_):
            return self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["same url"], model_config())

        with ThreadPoolExecutor(max_workers=5) as pool:
            futures = [pool.submit(call, i) for i in range(5)]
            _wait_for(lambda: len(self.redis.get_calls) == 5)
            time.sleep(0.2)
            release.set()
            results = [f.result(timeout=5) for f in futures]

        assert self.create.call_count == 1
        assert all(r.data == {"title": "Shared"} for r in results)
        assert self.count(user_id, UsageAction.RECIPE_PARSE) == 5
        assert self.gateway.registry.in_flight_count() == 0

        entries = self.audit_log.recent(user_id=user_id)
        assert len(entries) == 5
        assert sum(1 for e in entries if e.total_tokens is not None) == 1


class TestGatewayStreaming(GatewayTestCase):
    """Test the streamed invoke path."""

    def test_stream_then_cache_hit(self):
        user_id = self.create_user()
        self.create.return_value = FakeStream([
            make_chunk('{"title": '),
            make_chunk('"Soup"}'),
            make_chunk(None, usage=SimpleNamespace(prompt_tokens=5, completion_tokens=5, total_tokens=10)),
        ])
        deltas = []

        first = self.gateway.invoke_streamed(
            user_id, UsageAction.RECIPE_GENERATION, ["soup"], model_config(), deltas.append
        )

        assert deltas == ['{"title": ', '"Soup"}']
        assert first.data == {"title": "Soup"}
        assert first.usage.total_tokens == 10

        cached_deltas = []
        second = self.gateway.invoke_streamed(
            user_id, UsageAction.RECIPE_GENERATION, ["soup"], model_config(), cached_deltas.append
        )

        assert second.cache_hit is True
        assert [json.loads(d) for d in cached_deltas] == [{"title": "Soup"}]
        assert self.create.call_count == 1
        assert self.count(user_id, UsageAction.RECIPE_GENERATION) == 2

    def test_streamed_calls_are_gated(self):
        user_id = self.create_user()

        with pytest.raises(FeatureNotAvailable):
            self.gateway.invoke_streamed(
                user_id, UsageAction.RECIPE_SUGGEST, ["eggs"], model_config(), lambda d: None
            )


class TestCategorizeItems(GatewayTestCase):
    """Test batch categorization through the gateway."""

    ITEMS = [{"id": "i1", "name": "Milk"}, {"id": "i2", "name": "Apples"}]
    CATEGORIES = [{"id": "dairy", "name": "Dairy"}, {"id": "produce", "name": "Produce"}]

    def test_categorize_and_cache(self):
        user_id = self.create_user()
        self.create.return_value = make_completion({"mappings": [
            {"itemId": "i1", "categoryId": "dairy", "confidence": 0.97},
            {"itemId": "i2", "categoryId": "produce", "confidence": 0.4},
        ]})
        config = model_config(prompt="Categorize these items.", temperature=0.0)

        result = self.gateway.categorize_items(user_id, self.ITEMS, self.CATEGORIES, config)

        assert result == [
            CategoryMapping("i1", "dairy", 0.97),
            CategoryMapping("i2", None, 0.4),
        ]
        assert self.create.call_args.kwargs["response_format"] == CATEGORIZE_RESPONSE_FORMAT

        again = self.gateway.categorize_items(
            user_id, list(reversed(self.ITEMS)), self.CATEGORIES, config
        )

        assert again == result
        assert self.create.call_count == 1
        assert self.count(user_id, UsageAction.SMART_GROUP) == 2

    def test_incomplete_mapping_rejected(self):
        user_id = self.create_user()
        self.create.return_value = make_completion({"mappings": [
            {"itemId": "i1", "categoryId": "dairy", "confidence": 0.9},
        ]})

        with pytest.raises(InvalidModelOutput, match="Expected 2 mappings"):
            self.gateway.categorize_items(user_id, self.ITEMS, self.CATEGORIES, model_config())

        assert self.redis.data == {}


class TestGatewayQueries(GatewayTestCase):
    """Test read-through helpers and construction."""

    def test_usage_summary_and_subscription(self):
        user_id = self.create_user(plan=PlanType.PRO)
        self.gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], model_config())

        summary = {i.action: i for i in self.gateway.get_usage_summary(user_id)}

        assert summary[UsageAction.RECIPE_PARSE].current == 1
        assert summary[UsageAction.RECIPE_PARSE].limit == 30
        assert self.gateway.get_subscription(user_id).status == SubscriptionStatus.TRIAL

    def test_sweep_demotes_trial(self):
        user_id = self.create_user(plan=PlanType.PRO)
        self.clock.advance(days=15)

        assert self.gateway.sweep_expired_trials() == 1
        assert self.gateway.get_subscription(user_id).plan.type == PlanType.FREE

    @patch("ai_gateway.sdk.openai_client.OpenAI")
    @patch("ai_gateway.sdk.gateway.create_redis_client")
    def test_from_config(self, mock_create_redis, mock_openai_class):
        mock_create_redis.return_value = FakeRedis()
        config = GatewayConfig.default().with_db_path(self.db_path)

        gateway = Gateway.from_config(config, self.clock)

        mock_create_redis.assert_called_once_with(config.cache.redis_url)
        mock_openai_class.assert_called_once_with(timeout=60.0, max_retries=0)
        assert gateway.lifecycle.clock is self.clock
        assert gateway.lifecycle.ledger.db_path == self.db_path
        assert gateway.audit_log.db_path == self.db_path

    def test_configured_model_is_the_default(self):
        config = replace(
            GatewayConfig.default().with_db_path(self.db_path),
            model=ModelConfig(name="gpt-4o")
        )
        gateway = Gateway(
            lifecycle=self.lifecycle,
            cache=ResultCache(self.redis),
            model_client=StructuredOpenAI(client=self.openai_client),
            audit_log=self.audit_log,
            config=config
        )
        user_id = self.create_user()

        call = gateway.model_call_config("Reply with JSON.", "Parse this recipe.", temperature=0.1)
        gateway.invoke(user_id, UsageAction.RECIPE_PARSE, ["url"], call)

        assert call.model == "gpt-4o"
        assert call.temperature == 0.1
        assert self.create.call_args.kwargs["model"] == "gpt-4o"

    def test_model_can_be_overridden_per_call(self):
        call = self.gateway.model_call_config("Reply with JSON.", "Parse.", model="gpt-4o-mini")

        assert call.model == "gpt-4o-mini"
        assert self.gateway.model_call_config("Reply with JSON.", "Parse.").model == "gpt-4.1-mini"
