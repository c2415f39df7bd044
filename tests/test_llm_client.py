import os
from unittest.mock import patch

import pytest

from docgraph.utils.llm_client import create_anthropic_client, create_openai_client


@pytest.fixture
def mock_openai():
    with patch("docgraph.utils.llm_client.OpenAI") as mock:
        yield mock


@pytest.fixture
def mock_anthropic():
    with patch("docgraph.utils.llm_client.anthropic.Anthropic") as mock:
        yield mock


def test_create_client_defaults(mock_openai):
    with patch.dict(os.environ, {}, clear=True):
        create_openai_client()
        mock_openai.assert_called_once()
        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs.get("api_key") is None
        assert call_kwargs.get("base_url") is None
        # The inference service owns retries.
        assert call_kwargs.get("max_retries") == 0


def test_create_client_explicit_args(mock_openai):
    create_openai_client(
        api_key="sk-explicit",
        base_url="https://explicit.com",
        timeout=30.0,
        max_retries=5,
    )

    call_kwargs = mock_openai.call_args.kwargs
    assert call_kwargs["api_key"] == "sk-explicit"
    assert call_kwargs["base_url"] == "https://explicit.com"
    assert call_kwargs["timeout"] == 30.0
    assert call_kwargs["max_retries"] == 5


def test_create_client_env_vars(mock_openai):
    env = {"OPENAI_API_KEY": "sk-env", "OPENAI_BASE_URL": "https://env.com"}
    with patch.dict(os.environ, env):
        create_openai_client()

        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs["api_key"] == "sk-env"
        assert call_kwargs["base_url"] == "https://env.com"


def test_create_client_args_override_env(mock_openai):
    env = {"OPENAI_API_KEY": "sk-env", "OPENAI_BASE_URL": "https://env.com"}
    with patch.dict(os.environ, env):
        create_openai_client(api_key="sk-override", base_url="https://override.com")

        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs["api_key"] == "sk-override"
        assert call_kwargs["base_url"] == "https://override.com"


def test_anthropic_client_only_passes_given_options(mock_anthropic):
    with patch.dict(os.environ, {}, clear=True):
        create_anthropic_client(timeout=12.0)

        call_kwargs = mock_anthropic.call_args.kwargs
        assert call_kwargs == {"max_retries": 0, "timeout": 12.0}


def test_anthropic_client_reads_env_key(mock_anthropic):
    with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-ant-env"}):
        create_anthropic_client()

        assert mock_anthropic.call_args.kwargs["api_key"] == "sk-ant-env"
