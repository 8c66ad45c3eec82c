"""
Realtime session instructions.

Personas live in token_service/personas as YAML (or JSON, which
yaml.safe_load also reads). The persona is picked by REALTIME_PERSONA and
falls back to the built-in companion prompt.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from logging_setup import get_logger, Component


logger = get_logger(Component.TOKEN_SERVICE)

MAX_INSTRUCTIONS_CHARS = 16000

COMPANION_PROMPT = """
You are "Olive", an AI mental health companion. You are empathetic, confidential, culturally sensitive, and supportive. You are **not** a licensed clinician.

Keep answers warm, validating and brief in voice (1-3 sentences per turn unless user invites more). If the user mentions self-harm, harm to others, or acute crisis, respond with care and encourage immediate support.
""".strip()


def _get_personas_dir() -> Path:
    return Path(__file__).parent / "personas"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Persona file {path} must contain a mapping at top-level")
        return data


def load_persona(name: str) -> Dict[str, Any]:
    """
    Load a persona by name.

    Resolution order: <name>.yaml, <name>.yml, <name>.json, then companion,
    then the built-in prompt.
    """
    personas_dir = _get_personas_dir()
    for stem in (name, "companion"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = personas_dir / f"{stem}{suffix}"
            if candidate.exists():
                return _load_file(candidate)

    logger.warning("No persona file found; using built-in prompt", persona=name)
    return {"name": "companion", "prompt": COMPANION_PROMPT}


def get_instructions(persona: Optional[str] = None) -> str:
    """Session instructions for a persona, trimmed to the upstream limit."""
    data = load_persona(persona or "companion")
    prompt = str(data.get("prompt") or COMPANION_PROMPT).strip()
    return prompt[:MAX_INSTRUCTIONS_CHARS]
