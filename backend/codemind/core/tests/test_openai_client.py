# backend/codemind/core/tests/test_openai_client.py
import pytest
from unittest.mock import MagicMock, patch
from typing import List

from codemind.core.openai_client import OpenAIClient, RateLimitError, AuthenticationError
from codemind.core.llm_client import ChatMessage, GenerationConfig

# The exceptions from the openai library that we expect to be caught
from openai import RateLimitError as OpenAIRateLimitError, AuthenticationError as OpenAIAuthenticationError

# --- Test Fixtures ---

def _completion(content, finish_reason="stop", total_tokens=12):
    return MagicMock(
        choices=[MagicMock(message=MagicMock(content=content), finish_reason=finish_reason)],
        usage=MagicMock(total_tokens=total_tokens),
    )


@pytest.fixture
def mock_openai_constructor():
    """
    Provides a mock for the `openai.OpenAI` class constructor so we can
    inspect how the client is instantiated and control its responses.
    """
    with patch('codemind.core.openai_client.OpenAI') as mock_constructor:
        mock_instance = MagicMock()
        mock_instance.chat.completions.create.return_value = _completion("  Hello from OpenAI!  ")
        mock_constructor.return_value = mock_instance
        yield mock_constructor


# --- Test Cases for Initialization ---

class TestOpenAIClientInitialization:

    def test_init_success(self, mock_openai_constructor: MagicMock):
        client = OpenAIClient(api_key="fake-openai-key", model="gpt-4o")

        mock_openai_constructor.assert_called_once_with(api_key="fake-openai-key", base_url=None)
        assert client.model_id == "gpt-4o"
        assert client.client is not None

    def test_init_with_api_base(self, mock_openai_constructor: MagicMock):
        """A custom api_base (proxy, local server, compatibility endpoint) reaches the SDK."""
        OpenAIClient(api_key="fake-key", model="claude-sonnet-4", api_base="https://api.anthropic.com/v1/")
        mock_openai_constructor.assert_called_once_with(api_key="fake-key", base_url="https://api.anthropic.com/v1/")

    @pytest.mark.parametrize("api_key", [None, "", 123])
    def test_init_invalid_api_key_fails(self, api_key):
        with pytest.raises(ValueError, match="requires a valid string API key"):
            OpenAIClient(api_key=api_key, model="gpt-4o")

    @pytest.mark.parametrize("model", [None, "", 123])
    def test_init_invalid_model_fails(self, model):
        with pytest.raises(ValueError, match="requires a valid string model ID"):
            OpenAIClient(api_key="fake-key", model=model)

    def test_init_openai_constructor_fails(self, mock_openai_constructor: MagicMock):
        mock_openai_constructor.side_effect = Exception("SDK internal error")
        with pytest.raises(RuntimeError, match="Failed to initialize OpenAI client: SDK internal error"):
            OpenAIClient(api_key="fake-key", model="gpt-model")


# --- Test Cases for generate() ---

class TestOpenAIClientGenerate:

    @pytest.fixture
    def client(self, mock_openai_constructor: MagicMock) -> OpenAIClient:
        return OpenAIClient(api_key="fake-key", model="gpt-4o")

    def test_generate_success(self, client: OpenAIClient):
        messages: List[ChatMessage] = [{"role": "user", "content": "Hello"}]

        result = client.generate(messages, GenerationConfig(temperature=0.5))

        client.client.chat.completions.create.assert_called_once_with(
            model="gpt-4o",
            messages=[{"role": "user", "content": "Hello"}],
            temperature=0.5
        )
        assert result.content == "Hello from OpenAI!"
        assert result.tokens_used == 12
        assert result.finish_reason == "stop"

    def test_generate_passes_max_tokens(self, client: OpenAIClient):
        client.generate([{"role": "user", "content": "Hi"}], GenerationConfig(temperature=0.3, max_tokens=2000))
        call_args = client.client.chat.completions.create.call_args.kwargs
        assert call_args["max_tokens"] == 2000

    def test_generate_with_system_prompt(self, client: OpenAIClient):
        messages: List[ChatMessage] = [
            {"role": "system", "content": "You are a bot."},
            {"role": "user", "content": "Hello"}
        ]
        client.generate(messages)

        call_args = client.client.chat.completions.create.call_args.kwargs
        assert call_args['messages'][0] == {"role": "system", "content": "You are a bot."}

    def test_generate_drops_unknown_roles(self, client: OpenAIClient):
        client.generate([{"role": "tool", "content": "x"}, {"role": "user", "content": "Hello"}])
        call_args = client.client.chat.completions.create.call_args.kwargs
        assert call_args['messages'] == [{"role": "user", "content": "Hello"}]

    def test_generate_empty_content_becomes_empty_string(self, client: OpenAIClient):
        client.client.chat.completions.create.return_value = _completion(None, finish_reason="length")
        result = client.generate([{"role": "user", "content": "Hello"}])
        assert result.content == ""
        assert result.finish_reason == "length"

    def test_generate_empty_messages_fails(self, client: OpenAIClient):
        with pytest.raises(ValueError, match="empty or invalid messages list"):
            client.generate([])

    def test_generate_handles_rate_limit_error(self, client: OpenAIClient):
        client.client.chat.completions.create.side_effect = OpenAIRateLimitError("Rate limit exceeded", response=MagicMock(), body=None)

        with pytest.raises(RateLimitError, match="OpenAI API Rate Limit Exceeded"):
            client.generate([{"role": "user", "content": "test"}])

    def test_generate_handles_authentication_error(self, client: OpenAIClient):
        client.client.chat.completions.create.side_effect = OpenAIAuthenticationError("Invalid API Key", response=MagicMock(), body=None)

        with pytest.raises(AuthenticationError, match="OpenAI API Authentication Failed"):
            client.generate([{"role": "user", "content": "test"}])

    def test_generate_handles_no_choices_in_response(self, client: OpenAIClient):
        client.client.chat.completions.create.return_value = MagicMock(choices=[])

        with pytest.raises(RuntimeError, match="OpenAI response contained no choices"):
            client.generate([{"role": "user", "content": "test"}])

    def test_generate_handles_other_exceptions(self, client: OpenAIClient):
        client.client.chat.completions.create.side_effect = Exception("A generic network error")

        with pytest.raises(RuntimeError, match="Unexpected error during API call to OpenAI"):
            client.generate([{"role": "user", "content": "test"}])
