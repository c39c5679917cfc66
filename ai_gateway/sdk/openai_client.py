"""
Structured-output OpenAI client.

Issues chat completions, extracts a JSON payload from the response text and
retries the whole call exactly once when that payload does not parse.
"""

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import openai
from openai import OpenAI

from ai_gateway.core.errors import (
    EmptyResponse,
    InvalidModelOutput,
    ModelTimeout,
    ModelUnavailable,
)
from ai_gateway.core.token_counter import TokenUsage
from ai_gateway.logging_config import get_logger

logger = get_logger(__name__)

# Raw responses are logged truncated to this many characters
RAW_RESPONSE_LOG_LIMIT = 500

# One retry on unparseable JSON, never more
MAX_PARSE_ATTEMPTS = 2

_FENCE_OPEN = re.compile(r"```json\n?")
_FENCE_ANY = re.compile(r"```\n?")


@dataclass(frozen=True)
class ModelCallConfig:
    """Everything needed to issue one structured model call.

    Attributes:
        model: Model name
        system_message: System instruction
        prompt: User prompt text
        image_base64: Optional image data URL sent alongside the prompt
        response_format: Optional response_format / JSON schema hint
        temperature: Optional sampling temperature, omitted when None
        max_tokens: Optional completion token cap, omitted when None
        cache_ttl: Cache TTL in seconds, None to use the action's default
        operation_name: Name used in log lines
    """
    model: str
    system_message: str
    prompt: str
    image_base64: Optional[str] = None
    response_format: Optional[Dict[str, Any]] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    cache_ttl: Optional[int] = None
    operation_name: str = "model_call"

    def __post_init__(self):
        """Validate required fields."""
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if not self.system_message:
            raise ValueError("system_message is required and cannot be empty")
        if not self.prompt:
            raise ValueError("prompt is required and cannot be empty")
        if self.cache_ttl is not None and self.cache_ttl <= 0:
            raise ValueError("cache_ttl must be > 0")


@dataclass(frozen=True)
class StructuredResult:
    """Parsed JSON payload of a model call and its token usage."""
    data: Any
    usage: Optional[TokenUsage]
    attempts: int = 1


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences wrapped around a JSON payload."""
    text = _FENCE_OPEN.sub("", text)
    text = _FENCE_ANY.sub("", text)
    return text.strip()


def parse_json_payload(text: str) -> Any:
    """Strip fences and parse JSON.

    Raises:
        json.JSONDecodeError: If the cleaned text is not valid JSON
    """
    return json.loads(strip_code_fences(text))


def extract_usage(usage: Any) -> Optional[TokenUsage]:
    """Token usage from a provider usage object, None when not reported."""
    return TokenUsage.from_provider(usage)


def build_messages(config: ModelCallConfig) -> List[Dict[str, Any]]:
    """Assemble system and user messages for a call.

    The user message is plain text, or an image part followed by a text
    part when an image is attached.
    """
    user_content: Union[str, List[Dict[str, Any]]]
    if config.image_base64:
        user_content = [
            {
                "type": "image_url",
                "image_url": {"url": config.image_base64, "detail": "high"}
            },
            {"type": "text", "text": config.prompt},
        ]
    else:
        user_content = config.prompt

    return [
        {"role": "system", "content": config.system_message},
        {"role": "user", "content": user_content},
    ]


class StructuredOpenAI:
    """OpenAI client wrapper returning parsed JSON payloads.

    The underlying client is built with max_retries=0: a timed-out or failed
    call is never re-sent, so the provider is never billed twice for it.
    """

    def __init__(self, client: Optional[OpenAI] = None, timeout: float = 60.0):
        """Initialize the wrapper.

        Args:
            client: Preconfigured OpenAI client; one is created when None
            timeout: Per-call timeout in seconds for a created client

        Raises:
            ValueError: If timeout is not positive
        """
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.timeout = timeout
        self.client = client or OpenAI(timeout=timeout, max_retries=0)

    def call_structured(self, config: ModelCallConfig) -> StructuredResult:
        """Call the model and parse its JSON payload, retrying parse failures once.

        Args:
            config: Call configuration

        Returns:
            StructuredResult with parsed data, usage of the successful call
            and the number of upstream calls made

        Raises:
            EmptyResponse: If the model returned no text
            InvalidModelOutput: If both attempts returned unparseable JSON
            ModelTimeout: If the call timed out
            ModelUnavailable: If the provider failed the call
        """
        for attempt in range(1, MAX_PARSE_ATTEMPTS + 1):
            text, usage = self._complete(config)
            try:
                data = parse_json_payload(text)
            except json.JSONDecodeError as e:
                if attempt < MAX_PARSE_ATTEMPTS:
                    logger.warning(
                        "JSON parse failed, retrying OpenAI call once",
                        operation=config.operation_name,
                        raw_response=text[:RAW_RESPONSE_LOG_LIMIT]
                    )
                    continue
                logger.error(
                    "JSON parse failed after retry",
                    operation=config.operation_name,
                    raw_response=text[:RAW_RESPONSE_LOG_LIMIT]
                )
                raise InvalidModelOutput(
                    f"Model returned invalid JSON for {config.operation_name}: {e}",
                    raw_response=text
                ) from e
            return StructuredResult(data=data, usage=usage, attempts=attempt)

        raise AssertionError("unreachable")

    def call_streamed(
        self,
        config: ModelCallConfig,
        on_delta: Callable[[str], None]
    ) -> StructuredResult:
        """Stream a completion, forwarding text deltas, then parse the payload.

        There is no retry: deltas already handed to on_delta cannot be taken
        back.

        Args:
            config: Call configuration
            on_delta: Called with each text delta as it arrives

        Returns:
            StructuredResult with parsed data and final usage

        Raises:
            EmptyResponse: If the stream produced no text
            InvalidModelOutput: If the streamed text is not valid JSON
            ModelTimeout: If the stream timed out
            ModelUnavailable: If the provider failed the stream
        """
        start_time = time.monotonic()
        parts: List[str] = []
        usage = None
        try:
            with self.client.chat.completions.create(
                stream=True,
                stream_options={"include_usage": True},
                **self._request_params(config)
            ) as stream:
                for chunk in stream:
                    if getattr(chunk, "usage", None) is not None:
                        usage = chunk.usage
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta.content
                    if delta:
                        parts.append(delta)
                        on_delta(delta)
        except openai.APITimeoutError as e:
            raise ModelTimeout(f"Model stream timed out: {config.operation_name}") from e
        except openai.APIError as e:
            raise ModelUnavailable(f"Model stream failed: {config.operation_name}: {e}") from e

        token_usage = extract_usage(usage)
        logger.info(
            "Streamed OpenAI call done",
            operation=config.operation_name,
            model=config.model,
            duration_ms=int((time.monotonic() - start_time) * 1000),
            tokens_used=token_usage.total_tokens if token_usage else None
        )

        text = "".join(parts).strip()
        if not text:
            raise EmptyResponse(f"Empty response from model stream: {config.operation_name}")

        try:
            data = parse_json_payload(text)
        except json.JSONDecodeError as e:
            logger.error(
                "Streamed JSON parse failed",
                operation=config.operation_name,
                raw_response=text[:RAW_RESPONSE_LOG_LIMIT]
            )
            raise InvalidModelOutput(
                f"Model stream returned invalid JSON for {config.operation_name}: {e}",
                raw_response=text
            ) from e
        return StructuredResult(data=data, usage=token_usage, attempts=1)

    def _complete(self, config: ModelCallConfig) -> Tuple[str, Optional[TokenUsage]]:
        """Issue one completion and return its trimmed text and usage."""
        start_time = time.monotonic()
        try:
            completion = self.client.chat.completions.create(**self._request_params(config))
        except openai.APITimeoutError as e:
            raise ModelTimeout(f"Model call timed out: {config.operation_name}") from e
        except openai.APIError as e:
            raise ModelUnavailable(f"Model call failed: {config.operation_name}: {e}") from e

        usage = extract_usage(getattr(completion, "usage", None))
        logger.info(
            "OpenAI API call completed",
            operation=config.operation_name,
            model=config.model,
            duration_ms=int((time.monotonic() - start_time) * 1000),
            tokens_used=usage.total_tokens if usage else None
        )

        text = None
        if completion.choices:
            text = completion.choices[0].message.content
        text = (text or "").strip()
        if not text:
            logger.error("Empty response from OpenAI API", operation=config.operation_name)
            raise EmptyResponse(f"Empty response from model: {config.operation_name}")
        return text, usage

    @staticmethod
    def _request_params(config: ModelCallConfig) -> Dict[str, Any]:
        """Request parameters; optional settings are sent only when set."""
        params: Dict[str, Any] = {
            "model": config.model,
            "messages": build_messages(config),
        }
        if config.temperature is not None:
            params["temperature"] = config.temperature
        if config.max_tokens is not None:
            params["max_tokens"] = config.max_tokens
        if config.response_format is not None:
            params["response_format"] = config.response_format
        return params
