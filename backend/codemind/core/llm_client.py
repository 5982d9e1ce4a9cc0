# backend/codemind/core/llm_client.py
import time
import logging
import requests
import json
from typing import List, Dict, Any, Optional, TypedDict, Protocol
import random

from pydantic import BaseModel

logger = logging.getLogger(__name__)

class ChatMessage(TypedDict, total=False):
    """
    A standardized dictionary structure for representing a single message in a conversation.
    This is used consistently across all LLM clients.
    """
    role: str  # 'user', 'assistant', or 'system'
    content: str

class GenerationConfig(BaseModel):
    """Sampling settings for one generation call."""
    temperature: float = 0.7
    max_tokens: Optional[int] = None

    def with_overrides(self, **overrides: Any) -> "GenerationConfig":
        """Returns a copy with the given non-None settings replaced."""
        return self.model_copy(update={k: v for k, v in overrides.items() if v is not None})

class GenerationResult(BaseModel):
    content: str
    tokens_used: Optional[int] = None
    finish_reason: Optional[str] = None

class RateLimitError(RuntimeError):
    """
    Custom exception raised specifically for API rate limit errors (e.g., HTTP 429).
    """
    pass

class AuthenticationError(RuntimeError):
    """
    Custom exception raised specifically for API authentication errors (e.g., HTTP 401/403).
    """
    pass

class LLMProvider(Protocol):
    """Anything that can turn a conversation into a single completion."""
    def generate(self, messages: List[ChatMessage], config: GenerationConfig) -> GenerationResult: ...


def validate_messages(messages: List[ChatMessage]) -> List[Dict[str, str]]:
    """
    Keeps only well-formed messages (string role and content).

    Raises:
        ValueError: If the list is empty or nothing valid remains.
    """
    if not messages or not isinstance(messages, list):
        raise ValueError("Cannot send chat request with empty or invalid messages list.")
    valid_messages = []
    for i, msg in enumerate(messages):
        if isinstance(msg, dict) and isinstance(msg.get('role'), str) and isinstance(msg.get('content'), str):
            valid_messages.append({"role": msg["role"], "content": msg["content"]})
        else:
            logger.warning(f"Skipping invalid message structure at index {i}: {str(msg)[:100]}...")
    if not valid_messages:
        raise ValueError("No valid messages found in the input list to send.")
    return valid_messages


class LlmClient:
    """
    A client for OpenRouter and any other OpenAI-compatible chat completions endpoint.

    Includes:
    - Retry logic with exponential backoff and jitter for transient network and server errors.
    - Specific handling for rate limit (429) and authentication (401/403) errors.

    The retries here are transport-level only. A response that arrives but
    cannot be parsed is the parsing pipeline's business, not this client's.
    """
    def __init__(self,
                 api_key: str,
                 model: str,
                 api_base: Optional[str] = None,
                 site_url: Optional[str] = None,
                 site_title: Optional[str] = None,
                 request_timeout: int = 120,
                 max_retries: int = 3
                 ):
        """
        Initializes the LLM client.

        Args:
            api_key: The API key for the endpoint.
            model: The model identifier to use (e.g., "deepseek/deepseek-chat").
            api_base: Full chat completions URL. Defaults to OpenRouter.
            site_url: Optional URL of the referring site for OpenRouter ranking.
            site_title: Optional title of the referring site for OpenRouter ranking.

        Raises:
            ValueError: If api_key or model is invalid.
        """
        if not api_key or not isinstance(api_key, str):
            raise ValueError("LlmClient requires a valid string API key.")
        if not model or not isinstance(model, str):
            raise ValueError("LlmClient requires a valid string model ID.")

        self.api_key = api_key.strip()
        self.model = model
        self.api_endpoint = api_base or 'https://openrouter.ai/api/v1/chat/completions'
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.initial_retry_delay = 2.0

        # A session gives connection pooling across the analysis, planning and repair calls.
        self.session = requests.Session()
        headers = {'Content-Type': 'application/json'}
        if site_url:
            headers['HTTP-Referer'] = site_url
        if site_title:
            headers['X-Title'] = site_title
        self.session.headers.update(headers)

        logger.info(f"LlmClient instance created for model '{self.model}'. Endpoint: {self.api_endpoint}")

    def _build_payload(self, messages: List[Dict[str, str]], config: GenerationConfig) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": config.temperature,
        }
        if config.max_tokens:
            payload["max_tokens"] = config.max_tokens
        return payload

    @staticmethod
    def _error_message(response: requests.Response, default: str) -> str:
        try:
            error_data = response.json().get('error', {})
            return error_data.get('message', default) if isinstance(error_data, dict) else default
        except (json.JSONDecodeError, ValueError, AttributeError):
            return default

    def _parse_success(self, data: Any) -> GenerationResult:
        if not isinstance(data, dict) or not isinstance(data.get("choices"), list) or not data["choices"]:
            raise RuntimeError("Invalid response structure from LLM: 'choices' missing or empty.")
        choice = data["choices"][0]
        message_data = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message_data, dict) or "content" not in message_data:
            raise RuntimeError("Invalid response structure from LLM: 'message' or 'content' missing.")
        usage = data.get("usage") or {}
        return GenerationResult(
            content=(message_data.get("content") or "").strip(),
            tokens_used=usage.get("total_tokens") if isinstance(usage, dict) else None,
            finish_reason=choice.get("finish_reason"),
        )

    def generate(self, messages: List[ChatMessage], config: Optional[GenerationConfig] = None) -> GenerationResult:
        """
        Sends a chat completion request with validation and retry logic.

        Raises:
            ValueError: If the messages list is empty or invalid.
            RateLimitError: If the API keeps returning 429 after all retries.
            AuthenticationError: If the API returns a 401 or 403 status code.
            RuntimeError: If the request fails after all retries or encounters an unrecoverable error.
        """
        config = config or GenerationConfig()
        payload = self._build_payload(validate_messages(messages), config)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Request payload:\n{json.dumps(payload, indent=2)[:2000]}")

        last_exception: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            should_retry = False
            logger.info(f"Sending {len(payload['messages'])} messages to '{self.model}' (Attempt {attempt}/{self.max_retries})...")
            start_time = time.time()
            try:
                response = self.session.post(
                    self.api_endpoint,
                    headers={'Authorization': f'Bearer {self.api_key}'},
                    json=payload,
                    timeout=self.request_timeout
                )
                logger.debug(f"Attempt {attempt}: API call returned after {time.time() - start_time:.2f}s. Status code: {response.status_code}")

                if response.status_code == 429:
                    message = self._error_message(response, "API Rate Limit Exceeded (HTTP 429)")
                    last_exception = RateLimitError(f"API Rate Limit Exceeded for {self.model}: {message}")
                    logger.warning(f"API Rate Limit Exceeded for {self.model}. Message: {message}")
                    should_retry = True
                elif response.status_code in (401, 403):
                    message = self._error_message(response, f"Authentication Failed (HTTP {response.status_code})")
                    logger.error(f"API Authentication Failed for {self.model}. Message: {message}")
                    raise AuthenticationError(f"API Authentication Failed for {self.model}: {message}")
                else:
                    # Non-2xx codes raise HTTPError; handled below.
                    response.raise_for_status()
                    try:
                        return self._parse_success(response.json())
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.error(f"Failed to decode JSON response on attempt {attempt} for {self.model}: {e}")
                        last_exception = RuntimeError(f"Failed to decode JSON response from LLM ({self.model}): {e}")
                        should_retry = True
                    except RuntimeError as e:
                        logger.error(f"{e} (model: {self.model})")
                        last_exception = e
                        should_retry = True

            except requests.exceptions.Timeout as e:
                logger.warning(f"Timeout occurred on attempt {attempt} after {time.time() - start_time:.2f} seconds: {e}")
                last_exception = e
                should_retry = True
            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None
                last_exception = e
                # Retry on server-side errors (5xx) and request timeouts (408).
                if status_code is not None and (status_code == 408 or 500 <= status_code < 600):
                    logger.warning(f"Retryable HTTP error on attempt {attempt}: Status {status_code}")
                    should_retry = True
                else:
                    logger.error(f"Non-retryable HTTP error for {self.model}: {e}")
                    raise RuntimeError(f"HTTP error from {self.model}: {e}") from e
            except (requests.exceptions.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
                logger.warning(f"Connection/Network error on attempt {attempt}: {e}")
                last_exception = e
                should_retry = True
            except requests.exceptions.RequestException as e:
                logger.error(f"An unrecoverable network request error occurred: {e}", exc_info=True)
                raise RuntimeError(f"Unrecoverable network error during API call to {self.model}: {e}") from e

            if should_retry and attempt < self.max_retries:
                # Jitter keeps concurrent clients from retrying in lockstep.
                base_wait = self.initial_retry_delay * (2 ** (attempt - 1))
                wait_time = random.uniform(0, base_wait)
                logger.info(f"Waiting {wait_time:.2f} seconds (base backoff: {base_wait:.2f}s) before retry...")
                time.sleep(wait_time)

        logger.error(f"Max retries ({self.max_retries}) reached for {self.model}.")
        if isinstance(last_exception, (RateLimitError, RuntimeError)):
            raise last_exception
        raise RuntimeError(f"Failed to get a response from {self.model} after {self.max_retries} attempts: {last_exception}") from last_exception
