"""LLM client creation factory.

This module provides a centralized way to create LLM clients (OpenAI, Anthropic)
to ensure consistent configuration of API keys, base URLs, and timeouts.
"""

import os
from typing import Any, Optional

import anthropic
from loguru import logger
from openai import OpenAI


def _mask(key: Optional[str]) -> str:
    return f"{key[:4]}...{key[-4:]}" if key and len(key) > 8 else "None"


def create_openai_client(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 0,
    **kwargs: Any,
) -> OpenAI:
    """Create and configure an OpenAI client.

    Retries are handled by the inference service, so the client default is 0.

    Args:
        api_key: The API key. If None, falls back to OPENAI_API_KEY.
        base_url: The base URL. If None, falls back to OPENAI_BASE_URL.
        timeout: Request timeout in seconds.
        max_retries: Number of client-level retries.
        **kwargs: Additional arguments to pass to the OpenAI constructor.

    Returns:
        Configured OpenAI client.
    """
    final_api_key = api_key or os.getenv("OPENAI_API_KEY")
    final_base_url = base_url or os.getenv("OPENAI_BASE_URL")

    logger.debug(
        f"Creating OpenAI client: base_url={final_base_url}, "
        f"api_key={_mask(final_api_key)}, timeout={timeout}"
    )

    return OpenAI(
        api_key=final_api_key,
        base_url=final_base_url,
        timeout=timeout,
        max_retries=max_retries,
        **kwargs,
    )


def create_anthropic_client(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 0,
) -> anthropic.Anthropic:
    """Create and configure an Anthropic client.

    Args:
        api_key: The API key. If None, falls back to ANTHROPIC_API_KEY.
        base_url: Optional base URL override.
        timeout: Request timeout in seconds.
        max_retries: Number of client-level retries.
    """
    final_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")

    client_kwargs: dict[str, Any] = {"max_retries": max_retries}
    if final_api_key:
        client_kwargs["api_key"] = final_api_key
    if base_url:
        client_kwargs["base_url"] = base_url
    if timeout is not None:
        client_kwargs["timeout"] = timeout

    logger.debug(
        f"Creating Anthropic client: base_url={base_url}, "
        f"api_key={_mask(final_api_key)}, timeout={timeout}"
    )
    return anthropic.Anthropic(**client_kwargs)
