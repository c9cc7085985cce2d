"""
Token Stats Middleware

Wraps model calls with metering and optional quota enforcement:
1. Estimate prompt tokens and check the model's quota
2. Invoke the model (blocking or streaming)
3. Record the provider-reported usage, fire-and-forget

The identity used for metering can be pinned in ``MiddlewareConfig``
independently of the model actually invoked.
"""

import logging
import functools
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Iterator, Optional, Tuple

from tokenmeter.observability.tracing import get_tracer, trace_span, add_span_attributes
from .config import load_metering_config
from .directory import MODEL_KEY_SEPARATOR, parse_model_key
from .estimation import content_text, count_tokens, estimate_text_tokens, extract_token_usage
from .metrics import record_usage_skipped
from .quota import QuotaCheckResult
from .service import TokenStatsService, get_token_stats_service
from .types import TokenUsage

logger = logging.getLogger(__name__)
tracer = get_tracer("metering.middleware")

DEFAULT_PROVIDER = "azure"

# Deployment aliases and model names whose provider is not part of the name
KNOWN_MODEL_PROVIDERS = {
    "hifi": ("azure", "hifi"),
    "lofi": ("azure", "lofi"),
    "completions": ("azure", "completions"),
    "embedding": ("azure", "embedding"),
    "google-embedding": ("google", "embedding"),
}


@dataclass(frozen=True)
class MiddlewareConfig:
    """Metering identity override and behaviour switches."""

    provider: Optional[str] = None
    model_name: Optional[str] = None
    enable_quota_enforcement: bool = False
    enable_logging: bool = True


class QuotaExceededError(Exception):
    """Raised by enforcing middleware when a quota check denies the call."""

    def __init__(self, message: str, result: QuotaCheckResult):
        super().__init__(message)
        self.result = result

    @property
    def reason(self) -> Optional[str]:
        return self.result.reason


def infer_provider_and_model(model_id: str) -> Tuple[str, str]:
    """
    Best-effort provider for a model id.

    ``provider:model`` is split; known deployment names map to their provider;
    ``gemini-*`` and ``google-*`` are Google; anything else is Azure.
    """
    model_id = (model_id or "").strip()
    if MODEL_KEY_SEPARATOR in model_id:
        return parse_model_key(model_id)

    if model_id in KNOWN_MODEL_PROVIDERS:
        return KNOWN_MODEL_PROVIDERS[model_id]

    if model_id.startswith(("gemini-", "google-")):
        return "google", model_id

    return DEFAULT_PROVIDER, model_id


def _chunk_text(chunk: Any) -> str:
    if isinstance(chunk, str):
        return chunk
    content = getattr(chunk, "content", None)
    if content is not None:
        return content_text(content)
    if isinstance(chunk, dict):
        for key in ("text", "content", "delta"):
            if key in chunk:
                return content_text(chunk[key])
    text = getattr(chunk, "text", None)
    return text if isinstance(text, str) else ""


class TokenStatsMiddleware:
    """
    Metering middleware for model calls.

    Usage:
        middleware = token_stats_with_quota_middleware(MiddlewareConfig(provider="azure", model_name="gpt-4.1"))
        response = middleware.wrap_generate(llm.invoke, messages)

        @token_stats_middleware()
        def call_llm(prompt, **kwargs):
            return llm.invoke(prompt, **kwargs)

        call_llm(messages, provider="google", model_name="gemini-2.5-pro")
    """

    def __init__(self, config: Optional[MiddlewareConfig] = None, service: Optional[TokenStatsService] = None):
        self.config = config or MiddlewareConfig()
        self._service = service

    @property
    def service(self) -> TokenStatsService:
        return self._service or get_token_stats_service()

    def resolve_identity(self, provider: Optional[str] = None, model_name: Optional[str] = None) -> Tuple[str, str]:
        """Metering identity: config override, then per-call values, then inference."""
        if self.config.provider and self.config.model_name:
            return self.config.provider, self.config.model_name

        provider = provider or self.config.provider
        model_name = model_name or self.config.model_name

        if provider and MODEL_KEY_SEPARATOR in provider:
            return parse_model_key(provider)
        if provider and model_name:
            return provider.strip(), model_name.strip()
        return infer_provider_and_model(model_name or provider or "")

    def check_quota(self, provider: str, model_name: str, estimated_tokens: int) -> QuotaCheckResult:
        """
        Run the pre-call quota check.

        Raises:
            QuotaExceededError: If enforcement is enabled and the check denies
        """
        try:
            result = self.service.check_quota(provider, model_name, estimated_tokens)
        except Exception as e:
            # On error, allow the call (fail open)
            logger.error(f"Quota check failed for {provider}:{model_name}, allowing request: {e}")
            return QuotaCheckResult(allowed=True, reason="Quota check failed, allowing request", degraded=True)

        if result.allowed:
            if self.config.enable_logging:
                logger.debug(
                    f"Quota check passed for {provider}:{model_name} "
                    f"(estimated={estimated_tokens}, usage={result.current_usage.as_dict()})"
                )
            return result

        if self.config.enable_logging:
            logger.warning(f"Request failed quota check for {provider}:{model_name}: {result.reason}")

        if self.config.enable_quota_enforcement:
            raise QuotaExceededError(f"Quota exceeded: {result.reason}", result)

        return result

    def wrap_generate(
        self,
        call: Callable[..., Any],
        prompt: Any,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        **kwargs,
    ) -> Any:
        """
        Meter a blocking model call.

        Args:
            call: Model function, invoked as ``call(prompt, **kwargs)``
            prompt: Prompt passed to the model (used for the token estimate)
            provider: Per-call provider (or ``provider:model``)
            model_name: Per-call model name
            **kwargs: Forwarded to ``call``

        Returns:
            The model response, unchanged

        Raises:
            QuotaExceededError: If enforcement is enabled and the quota denies the call
            Exception: Any exception from the underlying call
        """
        provider, model_name = self.resolve_identity(provider, model_name)
        estimated_tokens = count_tokens(prompt)

        with trace_span(tracer, "metering.wrap_generate") as span:
            add_span_attributes(span, {
                "llm.provider": provider,
                "llm.model": model_name,
                "llm.tokens_estimate": estimated_tokens,
            })

            result = self.check_quota(provider, model_name, estimated_tokens)
            add_span_attributes(span, {"llm.quota.allowed": result.allowed})

            response = call(prompt, **kwargs)

            usage = extract_token_usage(response)
            if usage is None:
                if self.config.enable_logging:
                    logger.debug(f"No usage reported by {provider}:{model_name}; recording skipped")
                record_usage_skipped("no_usage")
            else:
                add_span_attributes(span, {"llm.tokens.total": usage.total_tokens})
                self._dispatch_usage(provider, model_name, usage)

            return response

    def wrap_stream(
        self,
        stream_call: Callable[..., Iterable[Any]],
        prompt: Any,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        **kwargs,
    ) -> Iterator[Any]:
        """
        Meter a streaming model call.

        The quota check runs before this method returns; the returned iterator
        passes chunks through and records usage once the stream is exhausted
        or closed by the consumer.
        """
        provider, model_name = self.resolve_identity(provider, model_name)
        estimated_tokens = count_tokens(prompt)

        self.check_quota(provider, model_name, estimated_tokens)
        stream = stream_call(prompt, **kwargs)

        return self._metered_stream(stream, provider, model_name, estimated_tokens)

    def _metered_stream(self, stream: Iterable[Any], provider: str, model_name: str, estimated_tokens: int) -> Iterator[Any]:
        generated = []
        reported: Optional[TokenUsage] = None
        finished = False

        try:
            for chunk in stream:
                generated.append(_chunk_text(chunk))
                usage = extract_token_usage(chunk)
                if usage is not None:
                    reported = usage
                yield chunk
            finished = True
        except GeneratorExit:
            finished = True
            raise
        finally:
            if finished:
                self._record_stream_usage(provider, model_name, estimated_tokens, "".join(generated), reported)

    def _record_stream_usage(
        self,
        provider: str,
        model_name: str,
        estimated_tokens: int,
        generated_text: str,
        reported: Optional[TokenUsage],
    ) -> None:
        if reported is None and not generated_text:
            record_usage_skipped("no_usage")
            return

        prompt_tokens = reported.prompt_tokens if reported else 0
        completion_tokens = reported.completion_tokens if reported else 0

        if completion_tokens == 0 and generated_text:
            completion_tokens = estimate_text_tokens(generated_text)
        if prompt_tokens == 0:
            prompt_tokens = estimated_tokens

        usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        if self.config.enable_logging:
            logger.debug(
                f"Stream finished for {provider}:{model_name}: {usage.as_dict()} "
                f"(reported={reported is not None}, generated_chars={len(generated_text)})"
            )
        self._dispatch_usage(provider, model_name, usage)

    def _dispatch_usage(self, provider: str, model_name: str, usage: TokenUsage) -> None:
        try:
            self.service.submit_token_usage(provider, model_name, usage)
        except Exception as e:
            logger.error(f"Failed to dispatch token usage for {provider}:{model_name}: {e}")

    def __call__(self, func: Callable) -> Callable:
        """
        Decorator form. ``provider`` and ``model_name`` keyword arguments are
        consumed by the middleware; everything else reaches ``func``.
        """

        @functools.wraps(func)
        def wrapper(prompt, *args, **kwargs):
            provider = kwargs.pop("provider", None)
            model_name = kwargs.pop("model_name", None)

            return self.wrap_generate(
                lambda p, **kw: func(p, *args, **kw),
                prompt,
                provider=provider,
                model_name=model_name,
                **kwargs
            )

        return wrapper


def token_stats_middleware(
    config: Optional[MiddlewareConfig] = None,
    service: Optional[TokenStatsService] = None,
) -> TokenStatsMiddleware:
    """
    Metering middleware. Without a config, enforcement follows
    QUOTA_ENFORCEMENT_ENABLED.
    """
    if config is None:
        config = MiddlewareConfig(enable_quota_enforcement=load_metering_config().quota_enforcement_enabled)
    return TokenStatsMiddleware(config, service)


def token_stats_with_quota_middleware(
    config: Optional[MiddlewareConfig] = None,
    service: Optional[TokenStatsService] = None,
) -> TokenStatsMiddleware:
    """Metering middleware that rejects calls denied by the quota engine."""
    return TokenStatsMiddleware(replace(config or MiddlewareConfig(), enable_quota_enforcement=True), service)


def token_stats_logging_only_middleware(
    config: Optional[MiddlewareConfig] = None,
    service: Optional[TokenStatsService] = None,
) -> TokenStatsMiddleware:
    """Metering middleware that logs quota denials but never rejects."""
    return TokenStatsMiddleware(
        replace(config or MiddlewareConfig(), enable_logging=True, enable_quota_enforcement=False),
        service,
    )
