"""
Utility helpers around the OpenAI client used for report feedback.
"""

from __future__ import annotations

import httpx
from openai import OpenAI

from .config import FeedbackConfig


def build_openai_client(config: FeedbackConfig, max_connections: int = 4) -> OpenAI:
    """
    Instantiate an OpenAI client for `config` with an HTTPX transport.
    """
    http_client = httpx.Client(
        timeout=config.timeout,
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_connections,
        ),
    )
    return OpenAI(
        api_key=config.api_key,
        base_url=config.base_url or None,
        http_client=http_client,
        max_retries=1,
    )
