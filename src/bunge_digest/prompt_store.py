"""File-based prompt management.

Features:
- Prompts are Jinja2 templates under ``bunge_digest/prompts/``
- Loading by logical name (e.g. "summarization/map_v1")
- In-memory caching to avoid repeated disk I/O
- SHA256 hashes of template sources, stored with each final summary
"""

from __future__ import annotations

from functools import lru_cache
from hashlib import sha256
from pathlib import Path
from typing import Any, Tuple

from jinja2 import StrictUndefined, Template

PROMPT_DIR = Path(__file__).resolve().parent / "prompts"


class PromptNotFoundError(FileNotFoundError):
    """Raised when a requested prompt template is not found on disk."""


def _template_path(name: str) -> Path:
    rel_path = Path(name) if name.endswith(".j2") else Path(name + ".j2")
    path = PROMPT_DIR / rel_path
    if not path.exists():
        raise PromptNotFoundError(
            f"Prompt template not found: {path}\n"
            f"  Searched in: {PROMPT_DIR}\n"
            f"  Requested name: {name}"
        )
    return path


@lru_cache(maxsize=None)
def _load(name: str) -> Tuple[Template, str]:
    """Load and cache a template and the SHA256 of its source.

    Example:
        name="summarization/map_v1" -> prompts/summarization/map_v1.j2
    """
    source = _template_path(name).read_text(encoding="utf-8")
    template = Template(source, undefined=StrictUndefined, keep_trailing_newline=False)
    return template, sha256(source.encode("utf-8")).hexdigest()


def render_prompt(name: str, **params: Any) -> str:
    """Render a prompt template with parameters.

    Returns:
        Rendered prompt string (stripped of leading/trailing whitespace).

    Raises:
        PromptNotFoundError: If template file doesn't exist
        jinja2.UndefinedError: If the template uses a parameter not passed
    """
    template, _ = _load(name)
    return template.render(**params).strip()


def prompt_hash(name: str) -> str:
    """SHA256 of the template source, identifying the prompt version used."""
    _, digest = _load(name)
    return digest
