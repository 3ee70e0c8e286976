"""
Runtime settings for the AI feedback client.

The credential is never looked up implicitly by the client: callers build a
FeedbackConfig (usually with `FeedbackConfig.from_env`) and pass it in.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

DEFAULT_FEEDBACK_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT = 60.0


@dataclass(frozen=True)
class FeedbackConfig:
    api_key: Optional[str] = None
    model: str = DEFAULT_FEEDBACK_MODEL
    base_url: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    locale: str = "ko"

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FeedbackConfig":
        """
        Read OPENAI_API_KEY, OPENAI_BASE_URL and OPENAI_MODEL.
        """
        env = os.environ if environ is None else environ
        return cls(
            api_key=env.get("OPENAI_API_KEY") or None,
            model=env.get("OPENAI_MODEL") or DEFAULT_FEEDBACK_MODEL,
            base_url=env.get("OPENAI_BASE_URL") or None,
        )

    def with_overrides(
        self,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> "FeedbackConfig":
        """Return a copy where every non-None argument replaces the current value."""
        changes = {
            key: value
            for key, value in {
                "api_key": api_key,
                "model": model,
                "base_url": base_url,
                "locale": locale,
            }.items()
            if value is not None
        }
        return replace(self, **changes) if changes else self
