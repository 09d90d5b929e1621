"""Tests for LLMClient provider abstraction."""

import logging
from unittest.mock import Mock

import pytest
from opsmemory.common.config import LLMConfig
from opsmemory.common.errors import ConfigurationError
from opsmemory.common.llm_client import LLMClient


class TestLLMClientInit:
    def test_missing_anthropic_key_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="opsmemory.common.llm_client"):
            client = LLMClient(provider="anthropic")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_openai_key_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="opsmemory.common.llm_client"):
            client = LLMClient(provider="openai")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_google_key_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="opsmemory.common.llm_client"):
            client = LLMClient(provider="google")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_unsupported_provider_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="opsmemory.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz")
        assert not client.is_available
        assert "Unsupported" in caplog.text

    def test_from_config_uses_provider_model(self):
        cfg = LLMConfig(provider="openai", openai_model="gpt-4o")
        client = LLMClient.from_config(cfg)
        assert client.provider == "openai"
        assert client.model == "gpt-4o"
        assert not client.is_available


class TestLLMClientGenerate:
    def test_generate_raises_when_unavailable(self):
        client = LLMClient(provider="anthropic")
        with pytest.raises(ConfigurationError, match="not configured"):
            client.generate("test")

    def test_describe_image_raises_when_unavailable(self):
        client = LLMClient(provider="google")
        with pytest.raises(ConfigurationError):
            client.describe_image("aGVsbG8=", "describe")

    def test_anthropic_generate_passes_system_prompt(self):
        client = LLMClient(provider="anthropic")
        client.model = "claude-test"
        client._client = Mock()
        client._client.messages.create.return_value = Mock(content=[Mock(text="  hello  ")])

        assert client.generate("prompt", system="be brief", max_tokens=10) == "hello"
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "be brief"
        assert kwargs["max_tokens"] == 10
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    def test_anthropic_describe_image_sends_image_block(self):
        client = LLMClient(provider="anthropic")
        client._client = Mock()
        client._client.messages.create.return_value = Mock(content=[Mock(text="ACTION: Clicked save")])

        text = client.describe_image("aGVsbG8=", "what is on screen", mime_type="image/png")

        assert text == "ACTION: Clicked save"
        content = client._client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/png"
        assert content[0]["source"]["data"] == "aGVsbG8="
        assert content[1] == {"type": "text", "text": "what is on screen"}

    def test_openai_describe_image_uses_data_url(self):
        client = LLMClient(provider="openai")
        client._client = Mock()
        message = Mock(content="A spreadsheet")
        client._client.chat.completions.create.return_value = Mock(choices=[Mock(message=message)])

        assert client.describe_image("aGVsbG8=", "describe") == "A spreadsheet"
        content = client._client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="
