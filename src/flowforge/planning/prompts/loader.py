"""Prompt loader for the markdown prompt templates in this directory."""

import re
from functools import lru_cache
from pathlib import Path
from typing import Any

PROMPT_DIR = Path(__file__).parent

VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")


@lru_cache(maxsize=None)
def load_prompt(prompt_name: str) -> str:
    """Load a prompt from a markdown file.

    Args:
        prompt_name: Name of the prompt file (without .md extension)

    Returns:
        The prompt text with {{variable}} placeholders

    Raises:
        FileNotFoundError: If the prompt file doesn't exist
    """
    prompt_file = PROMPT_DIR / f"{prompt_name}.md"

    if not prompt_file.exists():
        raise FileNotFoundError(f"Prompt file not found: {prompt_file}")

    content = prompt_file.read_text(encoding="utf-8")

    # Skip the header line if it starts with #
    lines = content.split("\n")
    if lines and lines[0].startswith("# "):
        content = "\n".join(lines[1:])

    return content.strip()


def extract_variables(prompt_template: str) -> set[str]:
    """Extract all variable names from a prompt template.

    Expressions such as ``{{$json.field}}`` are not variables and are left alone.
    """
    return set(VARIABLE_PATTERN.findall(prompt_template))


def format_prompt(prompt_template: str, variables: dict[str, Any]) -> str:
    """Format a prompt template with variables.

    This function enforces a strict contract:
    - All variables provided must exist in the template
    - All variables in the template must be provided

    Raises:
        ValueError: If provided variables don't exist in the template
        KeyError: If template variables are missing from provided values
    """
    template_variables = extract_variables(prompt_template)
    provided_variables = set(variables.keys())

    unused_variables = provided_variables - template_variables
    if unused_variables:
        raise ValueError(
            f"Variables provided but not in template: {sorted(unused_variables)}. "
            f"Template expects: {sorted(template_variables)}"
        )

    missing_variables = template_variables - provided_variables
    if missing_variables:
        raise KeyError(f"Missing required variables: {sorted(missing_variables)}")

    # Single pass so values containing {{name}} are never substituted again
    return VARIABLE_PATTERN.sub(lambda m: str(variables[m.group(1)]), prompt_template)


def render_prompt(prompt_name: str, **variables: Any) -> str:
    """Load and format a prompt in one call."""
    return format_prompt(load_prompt(prompt_name), variables)
