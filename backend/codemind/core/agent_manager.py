# backend/codemind/core/agent_manager.py
import logging
import os
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, Union

from .config_manager import ConfigManager
from .llm_client import ChatMessage, GenerationConfig, GenerationResult, LlmClient
from .openai_client import OpenAIClient
from .secure_storage import retrieve_credential, store_credential

logger = logging.getLogger(__name__)

# Prompt used when a key is in neither the keyring nor the environment.
# Receives (title, is_password, message) and returns the entered value or None.
ShowInputPromptCallable = Callable[[str, bool, Optional[str]], Optional[str]]

ClientType = Union[LlmClient, OpenAIClient]


class AgentManager:
    """
    Owns the single LLM client used for analysis, planning, repair and recovery.

    The client class and its settings come from ``providers.json``; the API key
    is read from secure storage first, then from an environment variable with
    the same name as the key, and finally from an optional prompt callback
    (which stores what the user typed for next time).

    AgentManager itself satisfies the ``LLMProvider`` protocol, so the pipeline
    never needs to know which concrete client is in use.
    """
    def __init__(self,
                 provider_id: str,
                 model_id: str,
                 config_manager: ConfigManager,
                 show_input_prompt_cb: Optional[ShowInputPromptCallable] = None,
                 environ: Optional[Mapping[str, str]] = None,
                 min_request_interval_seconds: float = 0.0):
        logger.info(f"Initializing AgentManager for provider '{provider_id}' and model '{model_id}'...")
        if not provider_id or not model_id:
            raise ValueError("AgentManager requires a valid provider_id and model_id.")

        self.provider_id = provider_id
        self.model_id = model_id
        self.config_manager = config_manager
        self._show_input_prompt_cb = show_input_prompt_cb
        self._environ = os.environ if environ is None else environ
        self.agent: Optional[ClientType] = None
        self.last_api_call_time: Optional[float] = None
        self.min_request_interval_seconds = min_request_interval_seconds

        self._initialize_agent()

    def _get_client_class(self, class_name: str) -> Type[ClientType]:
        client_classes: Dict[str, Type[ClientType]] = {
            "LlmClient": LlmClient,
            "OpenAIClient": OpenAIClient,
        }
        client_class = client_classes.get(class_name)
        if not client_class:
            raise TypeError(f"Client class '{class_name}' not found in client factory.")
        return client_class

    def _initialize_agent(self) -> None:
        """
        Raises:
            ValueError: If the provider is unknown or its config is incomplete.
            RuntimeError: If no API key is available or the client fails to instantiate.
        """
        self.agent = None
        provider_config = self.config_manager.providers_config.get(self.provider_id)
        if not provider_config:
            raise ValueError(f"Provider '{self.provider_id}' not found in configuration.")

        key_name = provider_config.get("api_key_name")
        client_class_name = provider_config.get("client_class")
        client_config: Dict[str, Any] = dict(provider_config.get("client_config", {}))
        display_name = provider_config.get("display_name", self.provider_id)
        if not key_name or not client_class_name:
            raise ValueError(f"Provider config for '{self.provider_id}' is missing 'api_key_name' or 'client_class'.")

        try:
            api_key = self._load_key(key_name, display_name)
        except ValueError as e:
            raise RuntimeError(f"Failed to initialize agent. The API key for {display_name} was not provided. Error: {e}") from e

        # 'model_prefix' is only used to build model ids for display.
        client_config.pop("model_prefix", None)
        ClientClass = self._get_client_class(client_class_name)
        try:
            self.agent = ClientClass(api_key=api_key, model=self.model_id, **client_config)
            logger.info(f"Agent client {client_class_name} initialized for model '{self.model_id}'.")
        except Exception as e:
            logger.exception(f"Failed to create client instance for {self.provider_id} ({self.model_id}).")
            raise RuntimeError(f"Failed to initialize LLM agent for {self.provider_id}: {e}") from e

    def _load_key(self, key_name: str, display_name: str) -> str:
        api_key = retrieve_credential(key_name)
        if api_key:
            logger.info(f"Retrieved API key for {display_name} from secure storage.")
            return api_key

        env_key = (self._environ.get(key_name) or "").strip()
        if env_key:
            logger.info(f"Using API key for {display_name} from environment variable '{key_name}'.")
            return env_key

        if not self._show_input_prompt_cb:
            raise ValueError(f"API key '{key_name}' for {display_name} not found in secure storage or environment.")

        logger.warning(f"API key for {display_name} ('{key_name}') not found. Prompting user.")
        entered = self._show_input_prompt_cb(
            f"API Key for {display_name} Required", True, f"Please enter the API Key for {display_name}."
        )
        entered = (entered or "").strip()
        if not entered:
            raise ValueError(f"API key for {display_name} was not provided by the user.")
        try:
            store_credential(key_name, entered)
        except RuntimeError as e:
            # The key still works for this session even if it cannot be persisted.
            logger.warning(f"Could not store API key for {display_name}: {e}")
        return entered

    def invoke_agent(self, messages: List[ChatMessage], config: Optional[GenerationConfig] = None) -> GenerationResult:
        """Makes one LLM call with the configured client."""
        if self.min_request_interval_seconds and self.last_api_call_time:
            elapsed = time.time() - self.last_api_call_time
            if elapsed < self.min_request_interval_seconds:
                wait_time = self.min_request_interval_seconds - elapsed
                logger.info(f"Waiting for {wait_time:.2f} seconds to respect API rate limit interval...")
                time.sleep(wait_time)
        self.last_api_call_time = time.time()

        client = self.agent_client
        config = config or GenerationConfig()
        logger.debug(f"Using {type(client).__name__} with model {self.model_id} and temp {config.temperature}")
        return client.generate(messages, config)

    # LLMProvider protocol
    generate = invoke_agent

    @property
    def agent_client(self) -> ClientType:
        if self.agent is None:
            logger.error("Attempted to access agent client before successful initialization.")
            raise RuntimeError("Agent client is not initialized. Check API keys and logs.")
        return self.agent
