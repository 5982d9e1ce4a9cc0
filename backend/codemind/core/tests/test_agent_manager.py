# backend/codemind/core/tests/test_agent_manager.py
import pytest
from unittest.mock import MagicMock, patch

from codemind.core.agent_manager import AgentManager
from codemind.core.llm_client import GenerationConfig, GenerationResult

# --- Fixtures ---

@pytest.fixture
def mock_config_manager():
    """A ConfigManager stand-in with two providers."""
    manager = MagicMock()
    manager.providers_config = {
        "openrouter": {
            "display_name": "OpenRouter",
            "api_key_name": "OPENROUTER_API_KEY",
            "client_class": "LlmClient",
            "client_config": {"api_base": "https://openrouter.ai/api/v1/chat/completions", "model_prefix": "x/"},
        },
        "openai": {
            "display_name": "OpenAI",
            "api_key_name": "OPENAI_API_KEY",
            "client_class": "OpenAIClient",
            "client_config": {},
        },
        "broken": {"display_name": "Broken", "client_class": "LlmClient"},
        "mystery": {"api_key_name": "K", "client_class": "NoSuchClient"},
    }
    return manager


@pytest.fixture
def mock_llm_clients():
    with patch("codemind.core.agent_manager.OpenAIClient") as mock_openai, \
         patch("codemind.core.agent_manager.LlmClient") as mock_openrouter:
        yield {"openai": mock_openai, "openrouter": mock_openrouter}


@pytest.fixture
def mock_secure_storage():
    with patch("codemind.core.agent_manager.retrieve_credential") as mock_retrieve, \
         patch("codemind.core.agent_manager.store_credential") as mock_store:
        mock_retrieve.return_value = None
        yield {"retrieve": mock_retrieve, "store": mock_store}


class TestAgentManagerInitialization:

    def test_init_with_stored_key(self, mock_config_manager, mock_secure_storage, mock_llm_clients):
        mock_secure_storage["retrieve"].return_value = "stored-key"

        manager = AgentManager("openai", "gpt-4o", mock_config_manager, environ={})

        mock_secure_storage["retrieve"].assert_called_once_with("OPENAI_API_KEY")
        mock_llm_clients["openai"].assert_called_once_with(api_key="stored-key", model="gpt-4o")
        assert manager.agent is mock_llm_clients["openai"].return_value

    def test_init_with_environment_key(self, mock_config_manager, mock_secure_storage, mock_llm_clients):
        manager = AgentManager("openrouter", "deepseek/deepseek-chat", mock_config_manager,
                               environ={"OPENROUTER_API_KEY": "  env-key "})

        mock_llm_clients["openrouter"].assert_called_once_with(
            api_key="env-key", model="deepseek/deepseek-chat",
            api_base="https://openrouter.ai/api/v1/chat/completions",
        )
        assert manager.agent_client is mock_llm_clients["openrouter"].return_value

    def test_init_prompts_and_stores_key(self, mock_config_manager, mock_secure_storage, mock_llm_clients):
        prompt = MagicMock(return_value="typed-key")

        AgentManager("openai", "gpt-4o", mock_config_manager, show_input_prompt_cb=prompt, environ={})

        prompt.assert_called_once()
        assert prompt.call_args.args[1] is True
        mock_secure_storage["store"].assert_called_once_with("OPENAI_API_KEY", "typed-key")
        mock_llm_clients["openai"].assert_called_once_with(api_key="typed-key", model="gpt-4o")

    def test_store_failure_does_not_block_session(self, mock_config_manager, mock_secure_storage, mock_llm_clients):
        mock_secure_storage["store"].side_effect = RuntimeError("no keyring")
        manager = AgentManager("openai", "gpt-4o", mock_config_manager,
                               show_input_prompt_cb=MagicMock(return_value="typed-key"), environ={})
        assert manager.agent is not None

    def test_init_fails_if_user_cancels_prompt(self, mock_config_manager, mock_secure_storage, mock_llm_clients):
        with pytest.raises(RuntimeError, match="API key for OpenAI was not provided"):
            AgentManager("openai", "gpt-4o", mock_config_manager,
                         show_input_prompt_cb=MagicMock(return_value=None), environ={})

    def test_init_fails_without_any_key_source(self, mock_config_manager, mock_secure_storage, mock_llm_clients):
        with pytest.raises(RuntimeError, match="not found in secure storage or environment"):
            AgentManager("openai", "gpt-4o", mock_config_manager, environ={})
        mock_llm_clients["openai"].assert_not_called()

    def test_init_fails_with_unknown_provider(self, mock_config_manager):
        with pytest.raises(ValueError, match="not found in configuration"):
            AgentManager("nope", "model", mock_config_manager, environ={})

    def test_init_fails_with_incomplete_provider(self, mock_config_manager):
        with pytest.raises(ValueError, match="missing 'api_key_name' or 'client_class'"):
            AgentManager("broken", "model", mock_config_manager, environ={})

    def test_init_fails_with_unknown_client_class(self, mock_config_manager, mock_secure_storage):
        with pytest.raises(TypeError, match="NoSuchClient"):
            AgentManager("mystery", "model", mock_config_manager, environ={"K": "v"})

    def test_client_constructor_failure_is_wrapped(self, mock_config_manager, mock_secure_storage, mock_llm_clients):
        mock_llm_clients["openai"].side_effect = Exception("bad base url")
        with pytest.raises(RuntimeError, match="Failed to initialize LLM agent for openai: bad base url"):
            AgentManager("openai", "gpt-4o", mock_config_manager, environ={"OPENAI_API_KEY": "k"})

    @pytest.mark.parametrize("provider, model", [("", "m"), ("openai", "")])
    def test_requires_provider_and_model(self, mock_config_manager, provider, model):
        with pytest.raises(ValueError, match="valid provider_id and model_id"):
            AgentManager(provider, model, mock_config_manager, environ={})


class TestAgentManagerInvoke:

    @pytest.fixture
    def manager(self, mock_config_manager, mock_secure_storage, mock_llm_clients) -> AgentManager:
        return AgentManager("openai", "gpt-4o", mock_config_manager, environ={"OPENAI_API_KEY": "k"})

    def test_generate_delegates_to_client(self, manager: AgentManager):
        manager.agent.generate.return_value = GenerationResult(content="done")
        config = GenerationConfig(temperature=0.3)

        result = manager.generate([{"role": "user", "content": "hi"}], config)

        assert result.content == "done"
        manager.agent.generate.assert_called_once_with([{"role": "user", "content": "hi"}], config)

    def test_invoke_uses_default_config(self, manager: AgentManager):
        manager.agent.generate.return_value = GenerationResult(content="ok")
        manager.invoke_agent([{"role": "user", "content": "hi"}])
        passed_config = manager.agent.generate.call_args.args[1]
        assert passed_config == GenerationConfig()

    def test_invoke_fails_if_not_initialized(self, manager: AgentManager):
        manager.agent = None
        with pytest.raises(RuntimeError, match="Agent client is not initialized"):
            manager.invoke_agent([{"role": "user", "content": "hi"}])

    @patch("codemind.core.agent_manager.time.sleep")
    def test_min_request_interval_is_respected(self, mock_sleep, manager: AgentManager):
        manager.agent.generate.return_value = GenerationResult(content="ok")
        manager.min_request_interval_seconds = 60.0
        manager.invoke_agent([{"role": "user", "content": "one"}])
        manager.invoke_agent([{"role": "user", "content": "two"}])
        mock_sleep.assert_called_once()
        assert 0 < mock_sleep.call_args.args[0] <= 60.0
