"""
Prompt Loading Utilities
========================

Functions for loading and composing prompt templates from the prompts
directory.
"""

from pathlib import Path
from typing import Optional

from genstack.generation.models import CapabilityConfig, InputMode

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"


def load_prompt(name: str) -> str:
    """Load a prompt template from the prompts directory."""
    prompt_path = PROMPTS_DIR / f"{name}.md"
    return prompt_path.read_text(encoding="utf-8")


def get_planning_prompt() -> str:
    return load_prompt("planning")


def get_error_fixing_prompt() -> str:
    return load_prompt("error_fixing")


def get_code_generation_prompt(config: CapabilityConfig, has_plan: bool) -> str:
    """
    Compose the code generation system prompt.

    The base prompt is always included; the input mode and the presence of an
    architectural plan each add one section.
    """
    sections = [load_prompt("code_generation")]
    if config.input_mode == InputMode.TEMPLATE:
        sections.append(load_prompt("mode_template"))
    else:
        sections.append(load_prompt("mode_naive"))
    if has_plan:
        sections.append(load_prompt("mode_plan"))
    return "\n\n".join(section.strip() for section in sections)


def get_code_generation_user_prompt(prompt: str, plan: Optional[str]) -> str:
    if not plan:
        return prompt
    return f"User Requirements:\n{prompt}\n\nArchitectural Plan:\n{plan}"
