import logging
from typing import Any, Optional
from uuid import UUID

from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.outputs import LLMResult

from .estimation import extract_token_usage
from .metrics import record_usage_skipped
from .middleware import infer_provider_and_model
from .service import TokenStatsService, get_token_stats_service
from .types import TokenUsage

logger = logging.getLogger(__name__)


class TokenStatsCallbackHandler(BaseCallbackHandler):
    """
    LangChain callback handler that records token usage for metering.
    The metering identity comes from the constructor, falling back to the
    model name reported in ``llm_output``.
    """

    def __init__(
        self,
        service: Optional[TokenStatsService] = None,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ):
        self._service = service
        self.provider = provider
        self.model_name = model_name

    @property
    def service(self) -> TokenStatsService:
        return self._service or get_token_stats_service()

    def on_llm_end(self, response: LLMResult, *, run_id: UUID, parent_run_id: Optional[UUID] = None, **kwargs: Any) -> Any:
        try:
            usage = extract_token_usage(response)

            # Some providers only report usage per generation
            if usage is None and response.generations:
                prompt_tokens = 0
                completion_tokens = 0
                found = False
                for generation in response.generations[0]:
                    message = getattr(generation, "message", None)
                    generation_usage = extract_token_usage(message) or extract_token_usage(generation.generation_info)
                    if generation_usage is not None:
                        prompt_tokens += generation_usage.prompt_tokens
                        completion_tokens += generation_usage.completion_tokens
                        found = True
                if found:
                    usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)

            if usage is None:
                logger.debug(f"No token usage on LLM run {run_id}; recording skipped")
                record_usage_skipped("no_usage")
                return

            provider, model_name = self._identity(response)
            self.service.submit_token_usage(provider, model_name, usage)
        except Exception as e:
            logger.warning(f"TokenStatsCallback error: {e}")

    def _identity(self, response: LLMResult):
        if self.provider and self.model_name:
            return self.provider, self.model_name

        reported_model = None
        if response.llm_output:
            reported_model = response.llm_output.get("model_name") or response.llm_output.get("model")

        model_name = self.model_name or reported_model or "unknown"
        if self.provider:
            return self.provider, model_name
        return infer_provider_and_model(model_name)
