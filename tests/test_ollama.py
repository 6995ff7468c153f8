"""Tests for the Ollama embedding client.

The HTTP session is a Mock; time.sleep is patched so backoff is instant.
"""

from unittest.mock import Mock, patch

import pytest
import requests

from chronicle.ollama import (
    OllamaClient, ProviderConfigError, ProviderUnavailableError,
)
from chronicle.validation import ValidationError

TEXT = "How do I configure SQLite WAL mode?"


def _response(status=200, payload=None, text=""):
    response = Mock()
    response.status_code = status
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def _client(session, **kwargs):
    kwargs.setdefault("retry_delay", 1.0)
    return OllamaClient("http://ollama:11434/", "nomic-embed-text", session=session, **kwargs)


class TestGenerateEmbedding:

    def test_posts_model_and_input(self):
        session = Mock()
        session.post.return_value = _response(payload={"embeddings": [[0.1, 0.2, 0.3]]})
        client = _client(session, timeout=12)

        assert client.generate_embedding(f"  {TEXT}  ") == [0.1, 0.2, 0.3]
        session.post.assert_called_once_with(
            "http://ollama:11434/api/embed",
            json={"model": "nomic-embed-text", "input": TEXT},
            timeout=12,
        )

    @pytest.mark.parametrize("text", ["", "   ", "x" * 8193])
    def test_invalid_text_never_calls_provider(self, text):
        session = Mock()
        with pytest.raises(ValidationError):
            _client(session).generate_embedding(text)
        session.post.assert_not_called()

    def test_retries_connection_errors_with_backoff(self):
        session = Mock()
        session.post.side_effect = [
            requests.ConnectionError("refused"),
            requests.Timeout("slow"),
            _response(payload={"embeddings": [[1.0]]}),
        ]
        with patch("chronicle.ollama.time.sleep") as sleep:
            assert _client(session).generate_embedding(TEXT) == [1.0]
        assert session.post.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_exhausted_retries_raise_unavailable(self):
        session = Mock()
        session.post.side_effect = requests.ConnectionError("refused")
        with patch("chronicle.ollama.time.sleep") as sleep:
            with pytest.raises(ProviderUnavailableError) as excinfo:
                _client(session, max_retries=3).generate_embedding(TEXT)
        assert session.post.call_count == 4
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0]
        message = str(excinfo.value)
        assert "http://ollama:11434" in message
        assert "ollama serve" in message
        assert "ollama pull nomic-embed-text" in message

    def test_server_errors_are_retried(self):
        session = Mock()
        session.post.side_effect = [
            _response(status=503),
            _response(payload={"embeddings": [[0.5, 0.5]]}),
        ]
        with patch("chronicle.ollama.time.sleep"):
            assert _client(session).generate_embedding(TEXT) == [0.5, 0.5]

    def test_missing_model_is_not_retried(self):
        session = Mock()
        session.post.return_value = _response(status=404, text='{"error":"model not found"}')
        with patch("chronicle.ollama.time.sleep") as sleep:
            with pytest.raises(ProviderConfigError, match="ollama pull nomic-embed-text"):
                _client(session).generate_embedding(TEXT)
        assert session.post.call_count == 1
        sleep.assert_not_called()

    @pytest.mark.parametrize("payload", [
        {"embeddings": []},
        {"embeddings": [[]]},
        {},
        ["not", "a", "dict"],
        ValueError("bad json"),
    ])
    def test_unusable_response_is_config_error(self, payload):
        session = Mock()
        session.post.return_value = _response(payload=payload)
        with pytest.raises(ProviderConfigError):
            _client(session).generate_embedding(TEXT)
        assert session.post.call_count == 1


class TestIsAvailable:

    def test_model_listed(self):
        session = Mock()
        session.get.return_value = _response(
            payload={"models": [{"name": "llama3:8b"}, {"name": "Nomic-Embed-Text:latest"}]})
        assert _client(session).is_available()
        session.get.assert_called_once_with("http://ollama:11434/api/tags", timeout=30)

    def test_model_not_listed(self):
        session = Mock()
        session.get.return_value = _response(payload={"models": [{"name": "llama3:8b"}]})
        assert not _client(session).is_available()

    @pytest.mark.parametrize("outcome", [
        requests.ConnectionError("down"),
        requests.Timeout("slow"),
    ])
    def test_unreachable_never_raises(self, outcome):
        session = Mock()
        session.get.side_effect = outcome
        assert _client(session).is_available() is False

    def test_bad_status_or_body(self):
        session = Mock()
        session.get.return_value = _response(status=500)
        assert not _client(session).is_available()
        session.get.return_value = _response(payload=ValueError("not json"))
        assert not _client(session).is_available()


def test_context_manager_closes_session():
    session = Mock()
    with _client(session) as client:
        assert client.base_url == "http://ollama:11434"
    session.close.assert_called_once()
