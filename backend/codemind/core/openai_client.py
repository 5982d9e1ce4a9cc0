# backend/codemind/core/openai_client.py
import logging
from typing import List, Optional

from openai import OpenAI, RateLimitError as OpenAIRateLimitError, AuthenticationError as OpenAIAuthenticationError

# Import exceptions from the shared llm_client for consistency
from .llm_client import (
    RateLimitError, AuthenticationError, ChatMessage, GenerationConfig, GenerationResult, validate_messages
)

logger = logging.getLogger(__name__)

class OpenAIClient:
    """
    Handles communication with the OpenAI API (or any compatible base URL,
    e.g. a local server or Anthropic's compatibility endpoint) using the official openai SDK.
    """
    def __init__(self, api_key: str, model: str, api_base: Optional[str] = None, **kwargs):
        """
        Args:
            api_key: The OpenAI API key.
            model: The specific model identifier (e.g., "gpt-4o").
            api_base: Optional base URL for the API endpoint, for proxies or custom deployments.
        """
        if not api_key or not isinstance(api_key, str):
            raise ValueError("OpenAIClient requires a valid string API key.")
        if not model or not isinstance(model, str):
            raise ValueError("OpenAIClient requires a valid string model ID.")

        self.model_id = model
        try:
            self.client = OpenAI(api_key=api_key, base_url=api_base)
            logger.info(f"OpenAIClient instance created for model '{self.model_id}'.")
        except Exception as e:
            logger.exception("Failed to configure OpenAI client.")
            raise RuntimeError(f"Failed to initialize OpenAI client: {e}") from e

    def generate(self, messages: List[ChatMessage], config: Optional[GenerationConfig] = None) -> GenerationResult:
        """
        Sends a chat completion request.

        Raises:
            RateLimitError: If the API rate limit is exceeded.
            AuthenticationError: If the API key is invalid.
            RuntimeError: For other unexpected API or processing errors.
        """
        config = config or GenerationConfig()
        valid_messages = [m for m in validate_messages(messages) if m["role"] in ("system", "user", "assistant")]

        request_args = {"model": self.model_id, "messages": valid_messages, "temperature": config.temperature}
        if config.max_tokens:
            request_args["max_tokens"] = config.max_tokens

        try:
            logger.info(f"Sending request to OpenAI model '{self.model_id}'...")
            response = self.client.chat.completions.create(**request_args)
            if not response.choices:
                raise RuntimeError("OpenAI response contained no choices.")

            choice = response.choices[0]
            usage = getattr(response, "usage", None)
            logger.info(f"Response received successfully from OpenAI model {self.model_id}.")
            return GenerationResult(
                content=choice.message.content.strip() if choice.message.content else "",
                tokens_used=getattr(usage, "total_tokens", None) if usage else None,
                finish_reason=choice.finish_reason,
            )
        except OpenAIRateLimitError as e:
            raise RateLimitError(f"OpenAI API Rate Limit Exceeded: {e}") from e
        except OpenAIAuthenticationError as e:
            logger.error(f"OpenAI API Authentication Failed. Base URL: {self.client.base_url}. Error: {e}")
            raise AuthenticationError(f"OpenAI API Authentication Failed: {e}") from e
        except RuntimeError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error during API call to OpenAI: {e}")
            raise RuntimeError(f"Unexpected error during API call to OpenAI: {e}") from e
