"""OpenAI chat-completions summarization provider."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from openai import OpenAI

from .. import config
from ..config_constants import DEFAULT_SYSTEM_PROMPT
from ..exceptions import ServiceError
from ..prompt_store import render_prompt
from ..utils.openai_errors import map_openai_error
from .base import build_user_message

logger = logging.getLogger(__name__)


class OpenAISummarizationProvider:
    """Summarizes text with an OpenAI chat model.

    The system prompt is rendered once from ``summarization/system_v1``.
    SDK retries are disabled; the summarization engine owns retry policy.
    """

    name = "OpenAI/Summarization"

    def __init__(self, cfg: config.Config, system_prompt_name: str = DEFAULT_SYSTEM_PROMPT):
        if not cfg.openai_api_key:
            raise ValueError(
                "OpenAI API key required for summarization. "
                "Set OPENAI_API_KEY environment variable or openai_api_key in config."
            )
        client_kwargs: Dict[str, Any] = {
            "api_key": cfg.openai_api_key,
            "max_retries": 0,
            "timeout": float(cfg.openai_timeout),
        }
        if cfg.openai_api_base:
            client_kwargs["base_url"] = cfg.openai_api_base
        self.client = OpenAI(**client_kwargs)
        self.model = cfg.openai_summary_model
        self.temperature = cfg.openai_temperature
        self.max_tokens = cfg.summary_output_tokens
        self.system_prompt_name = system_prompt_name
        self.system_prompt = render_prompt(system_prompt_name)

    def summarize(self, text: str, instruction: str, context: Optional[str] = None) -> str:
        """Run one chat completion.

        Raises:
            RateLimitedError, ContextTooLongError, ServiceError, NetworkError:
                Mapped from the SDK's exceptions
        """
        user_prompt = build_user_message(text, instruction, context)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            mapped = map_openai_error(exc, self.name)
            if mapped is exc:
                raise
            raise mapped from exc

        if not response.choices:
            raise ServiceError("OpenAI API returned no choices", provider=self.name)
        summary = response.choices[0].message.content
        if not summary:
            raise ServiceError("OpenAI API returned an empty summary", provider=self.name)
        logger.debug("OpenAI summarization completed: %d characters", len(summary))
        return summary.strip()
