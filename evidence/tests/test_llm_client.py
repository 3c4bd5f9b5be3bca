"""Tests for LLMClient provider abstraction."""

import pytest
from unittest.mock import MagicMock
from evidence.common.llm_client import LLMClient


class TestLLMClientInit:
    def test_missing_anthropic_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="evidence.common.llm_client"):
            client = LLMClient(provider="anthropic")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_openai_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="evidence.common.llm_client"):
            client = LLMClient(provider="openai")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_google_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="evidence.common.llm_client"):
            client = LLMClient(provider="google")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_unsupported_provider_logs_warning(self, caplog):
        import logging
        with caplog.at_level(logging.WARNING, logger="evidence.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz")
        assert not client.is_available
        assert "Unsupported" in caplog.text

    def test_from_config_picks_provider_model(self):
        from evidence.common.config import LLMConfig
        client = LLMClient.from_config(LLMConfig(provider="openai", openai_model="gpt-4o"))
        assert client.provider == "openai"
        assert client.model == "gpt-4o"
        assert not client.is_available


class TestLLMClientGenerate:
    def test_generate_raises_when_unavailable(self):
        client = LLMClient(provider="anthropic")
        with pytest.raises(RuntimeError, match="not available"):
            client.generate("test")

    def test_anthropic_complete_passes_system_and_temperature(self):
        client = LLMClient(provider="anthropic", model="claude-test")
        fake = MagicMock()
        fake.messages.create.return_value.content = [MagicMock(text="  Antwort [1].  ")]
        client._client = fake

        text = client.complete(
            "System",
            [{"role": "user", "content": "Frage"}],
            max_tokens=800,
            temperature=0.2,
        )

        assert text == "Antwort [1]."
        kwargs = fake.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["max_tokens"] == 800
        assert kwargs["system"] == "System"
        assert kwargs["temperature"] == 0.2

    def test_openai_generate_prepends_system_message(self):
        client = LLMClient(provider="openai", model="gpt-test")
        fake = MagicMock()
        fake.chat.completions.create.return_value.choices = [
            MagicMock(message=MagicMock(content="ok"))
        ]
        client._client = fake

        assert client.generate("Frage", system="System") == "ok"
        messages = fake.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "System"}
        assert messages[1] == {"role": "user", "content": "Frage"}
        assert "temperature" not in fake.chat.completions.create.call_args.kwargs

    def test_google_model_cached_per_system_prompt(self):
        client = LLMClient(provider="google", model="gemini-test")
        genai = MagicMock()
        genai.GenerativeModel.return_value.generate_content.return_value.text = "ok"
        client._client = genai

        client.generate("a", system="S")
        client.generate("b", system="S")
        client.generate("c", system="T")

        assert genai.GenerativeModel.call_count == 2
