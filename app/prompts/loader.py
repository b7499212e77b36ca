"""
Prompt Registry Loader

Versioned prompt templates live as YAML under ``registry/`` and are rendered with Jinja2.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent / "registry"

_env = Environment(loader=BaseLoader(), undefined=StrictUndefined, trim_blocks=True, lstrip_blocks=True)


@dataclass
class PromptSpec:
    id: str
    version: str
    description: str
    purpose: str
    system_prompt: str
    user_prompt_template: str
    model_defaults: Dict[str, Any] = field(default_factory=dict)

    def render(self, context: Dict[str, Any]) -> Tuple[str, str]:
        """
        Render system and user prompts.

        Raises:
            ValueError: when a template is malformed or references a missing variable
        """
        try:
            system = _env.from_string(self.system_prompt).render(**context)
            user = _env.from_string(self.user_prompt_template).render(**context)
        except TemplateError as e:
            logger.error("Prompt %s failed to render: %s", self.id, e)
            raise ValueError(f"Failed to render prompt template {self.id}: {e}") from e
        return system, user

    @property
    def temperature(self) -> float:
        return self.model_defaults.get("temperature", 0.0)

    @property
    def json_mode(self) -> bool:
        return self.model_defaults.get("json_mode", True)


@lru_cache(maxsize=16)
def load_prompt(prompt_id: str) -> PromptSpec:
    """
    Load a prompt by id (the YAML file stem).

    Raises:
        FileNotFoundError: If prompt file doesn't exist
        ValueError: If prompt file is malformed
    """
    prompt_path = PROMPTS_DIR / f"{prompt_id}.yaml"
    if not prompt_path.exists():
        raise FileNotFoundError(f"Prompt not found: {prompt_id} at {prompt_path}")

    try:
        with open(prompt_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse prompt YAML: {e}") from e

    for field_name in ("id", "system_prompt", "user_prompt_template"):
        if field_name not in data:
            raise ValueError(f"Prompt {prompt_id} missing required field: {field_name}")

    return PromptSpec(
        id=data["id"],
        version=str(data.get("version", "1.0.0")),
        description=data.get("description", ""),
        purpose=data.get("purpose", prompt_id),
        system_prompt=data["system_prompt"],
        user_prompt_template=data["user_prompt_template"],
        model_defaults=data.get("model_defaults", {}),
    )


def list_prompts() -> List[str]:
    if not PROMPTS_DIR.exists():
        return []
    return sorted(p.stem for p in PROMPTS_DIR.glob("*.yaml"))
