"""
Token estimation and usage extraction for model calls.

``count_tokens`` is a structure-aware heuristic (about four characters per
token plus per-message overhead) used for pre-call quota checks.
``extract_token_usage`` reads the usage a provider reported on its response.
"""

import json
import math
import logging
from typing import Any, Iterable, Mapping, Optional

from langchain_core.messages import BaseMessage

from .types import TokenUsage

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TOKENS_PER_MESSAGE = 3
TOKENS_PER_NAME = 1
REPLY_PRIMING_TOKENS = 3


def estimate_text_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def content_text(content: Any) -> str:
    """Flatten message content (string, content parts, nested structures) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, Mapping):
        if isinstance(content.get("text"), str):
            return content["text"]
        if "content" in content:
            return content_text(content["content"])
        return json.dumps(content, default=str)
    if isinstance(content, (list, tuple)):
        return "".join(content_text(part) for part in content)
    return json.dumps(content, default=str)


def _is_message(value: Any) -> bool:
    return isinstance(value, BaseMessage) or (isinstance(value, Mapping) and "content" in value)


def _message_tokens(message: Any) -> int:
    if isinstance(message, BaseMessage):
        tokens = TOKENS_PER_MESSAGE + estimate_text_tokens(content_text(message.content))
        if message.name:
            tokens += TOKENS_PER_NAME
        return tokens

    if isinstance(message, Mapping):
        tokens = TOKENS_PER_MESSAGE + estimate_text_tokens(content_text(message.get("content")))
        if message.get("name"):
            tokens += TOKENS_PER_NAME
        return tokens

    return TOKENS_PER_MESSAGE + estimate_text_tokens(content_text(message))


def _messages_tokens(messages: Iterable[Any]) -> int:
    messages = list(messages)
    if not messages:
        return 0
    return sum(_message_tokens(m) for m in messages) + REPLY_PRIMING_TOKENS


def count_tokens(prompt: Any) -> int:
    """
    Estimate the prompt size of a model call.

    Accepts a string, a single message, a list of messages (role/content dicts
    or LangChain messages) or a ``{"messages": [...]}`` payload. Never raises.
    """
    try:
        if prompt is None:
            return 0
        if isinstance(prompt, str):
            return estimate_text_tokens(prompt)
        if isinstance(prompt, Mapping) and isinstance(prompt.get("messages"), (list, tuple)):
            return _messages_tokens(prompt["messages"])
        if _is_message(prompt):
            return _messages_tokens([prompt])
        if isinstance(prompt, (list, tuple)):
            if all(isinstance(item, str) for item in prompt):
                return sum(estimate_text_tokens(item) for item in prompt)
            return _messages_tokens(prompt)
        return estimate_text_tokens(json.dumps(prompt, default=str))
    except Exception as e:
        logger.debug(f"Structured token estimate failed, falling back to raw length: {e}")
        try:
            return estimate_text_tokens(str(prompt))
        except Exception:
            return 0


# (prompt, completion, total) field names used by different providers
_USAGE_FIELD_SETS = (
    ("input_tokens", "output_tokens", "total_tokens"),
    ("prompt_tokens", "completion_tokens", "total_tokens"),
    ("promptTokens", "completionTokens", "totalTokens"),
)


def _as_mapping(value: Any) -> Optional[Mapping]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()
    names = {name for field_set in _USAGE_FIELD_SETS for name in field_set}
    found = {name: getattr(value, name) for name in names if hasattr(value, name)}
    return found or None


def _usage_from_mapping(data: Optional[Mapping]) -> Optional[TokenUsage]:
    if not data:
        return None
    for prompt_field, completion_field, total_field in _USAGE_FIELD_SETS:
        if prompt_field in data or completion_field in data:
            prompt = int(data.get(prompt_field) or 0)
            completion = int(data.get(completion_field) or 0)
            total = data.get(total_field)
            return TokenUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=int(total) if total else prompt + completion,
            )
    return None


def _lookup(response: Any, name: str) -> Any:
    if isinstance(response, Mapping):
        return response.get(name)
    return getattr(response, name, None)


def extract_token_usage(response: Any) -> Optional[TokenUsage]:
    """
    Read provider-reported usage from a model response.

    Looks at, in order: LangChain ``usage_metadata``, an OpenAI-style ``usage``
    (or bare ``token_usage``) field, ``response_metadata["token_usage"]`` and
    ``llm_output["token_usage"]``.
    Returns None when the response carries no usage information.
    """
    if response is None:
        return None

    try:
        candidates = [
            _lookup(response, "usage_metadata"),
            _lookup(response, "usage"),
            _lookup(response, "token_usage"),
        ]
        for container in ("response_metadata", "llm_output"):
            metadata = _lookup(response, container)
            if isinstance(metadata, Mapping):
                candidates.append(metadata.get("token_usage"))
                candidates.append(metadata.get("usage"))

        for candidate in candidates:
            usage = _usage_from_mapping(_as_mapping(candidate))
            if usage is not None:
                return usage
    except (TypeError, ValueError) as e:
        logger.debug(f"Ignoring malformed usage on {type(response).__name__}: {e}")

    return None
