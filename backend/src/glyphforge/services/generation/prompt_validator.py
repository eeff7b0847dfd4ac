"""Request validation for SVG generation.

Normalizes and validates the inbound fields before a job is created.
"""

from glyphforge.models.generation_job import DEFAULT_MODEL, AiModel, SvgStyle
from glyphforge.services.exceptions import RequestValidationError

MIN_PROMPT_LENGTH = 10
MAX_PROMPT_LENGTH = 500
MAX_IDEMPOTENCY_KEY_LENGTH = 128


def sanitize_prompt(prompt: str) -> str:
    """Trim the prompt and strip angle brackets."""
    return prompt.strip().replace("<", "").replace(">", "")


def validate_prompt(prompt: str | None) -> str:
    """Validate prompt text for generation.

    Args:
        prompt: Raw prompt text from the caller

    Returns:
        Sanitized prompt

    Raises:
        RequestValidationError: If prompt is empty, not a string, or outside 10-500 characters
    """
    if not prompt:
        raise RequestValidationError("Prompt is required")

    if not isinstance(prompt, str):
        raise RequestValidationError(f"Prompt must be a string, got {type(prompt).__name__}")

    if len(prompt) < MIN_PROMPT_LENGTH or len(prompt) > MAX_PROMPT_LENGTH:
        raise RequestValidationError(
            f"Prompt length must be between {MIN_PROMPT_LENGTH} and {MAX_PROMPT_LENGTH} characters"
        )

    sanitized = sanitize_prompt(prompt)
    if len(sanitized) < MIN_PROMPT_LENGTH:
        raise RequestValidationError(
            f"Prompt length must be between {MIN_PROMPT_LENGTH} and {MAX_PROMPT_LENGTH} characters"
        )
    return sanitized


def validate_style(style: str | None) -> SvgStyle:
    """Validate the requested style against the supported set."""
    try:
        return SvgStyle(style)
    except ValueError:
        allowed = ", ".join(s.value for s in SvgStyle)
        raise RequestValidationError(f"Invalid style. Must be one of: {allowed}")


def validate_model(model: str | None) -> AiModel:
    """Validate the requested model, defaulting when none is given."""
    if not model:
        return DEFAULT_MODEL
    try:
        return AiModel(model)
    except ValueError:
        allowed = ", ".join(m.value for m in AiModel)
        raise RequestValidationError(f"Invalid model. Must be one of: {allowed}")


def normalize_idempotency_key(idempotency_key: str | None) -> str | None:
    """Trim the idempotency key; an empty key means no key.

    Raises:
        RequestValidationError: If the key is longer than 128 characters
    """
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key:
        return None
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise RequestValidationError(
            f"Idempotency key must be {MAX_IDEMPOTENCY_KEY_LENGTH} characters or fewer"
        )
    return key
