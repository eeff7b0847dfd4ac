"""Replicate API client for SVG generation.

The generation engine is a hosted language model reached through the Replicate
SDK. Failures are re-raised as GenerationError with the upstream status code and
message preserved, so the error classifier can map them to stable codes.
"""

import asyncio
from typing import Any, Iterable

import replicate
from replicate.exceptions import ReplicateError as ReplicateAPIError

from glyphforge.models.generation_job import AiModel

SYSTEM_PROMPT = """You are an SVG generator. The user will describe an icon or simple vector illustration.

You MUST respond with ONLY A SINGLE <svg>...</svg> ELEMENT, no explanations, no markdown, no backticks.

Requirements:
1. viewBox="0 0 256 256"
2. Use only <path>, <rect>, <circle>, <line>, <polygon>, <g>
3. Keep the SVG minimal and valid XML
4. No comments, no extra text"""

# Replicate model names per accepted model (prefixed with the configured owner)
MODEL_REFERENCES: dict[AiModel, str] = {
    AiModel.GPT_5_MINI: "gpt-5-mini",
    AiModel.GPT_4: "gpt-4.1",
}


class GenerationError(Exception):
    """Base class for failures of the generation engine call."""

    pass


class InvalidSvgOutputError(GenerationError):
    """The model answered, but not with an <svg> element."""

    pass


def build_user_prompt(prompt: str, style: str) -> str:
    """Render the user message sent to the model."""
    return f'Generate a minimal SVG for: "{prompt}" in "{style}" style.'


def resolve_model_reference(model: str, model_owner: str) -> str:
    """Map an accepted model name to its "owner/name" Replicate reference."""
    try:
        name = MODEL_REFERENCES[AiModel(model)]
    except ValueError:
        raise GenerationError(f"Validation failed: model {model} not found")
    return f"{model_owner}/{name}"


def extract_svg(content: str) -> str:
    """Extract the single <svg>...</svg> element from model output.

    Raises:
        InvalidSvgOutputError: If the output is empty or holds no svg element
    """
    trimmed = content.strip()
    if not trimmed:
        raise InvalidSvgOutputError("No SVG code generated")

    svg_start = trimmed.find("<svg")
    svg_end = trimmed.rfind("</svg>")
    if svg_start == -1 or svg_end == -1 or svg_end < svg_start:
        raise InvalidSvgOutputError("Generated content is not a valid SVG element")

    return trimmed[svg_start : svg_end + len("</svg>")]


def _join_output(output: Any) -> str:
    # Language models on Replicate stream a list of text chunks
    if isinstance(output, str):
        return output
    if isinstance(output, Iterable):
        return "".join(str(chunk) for chunk in output)
    raise GenerationError(f"Unexpected output format from Replicate: {type(output)}")


async def generate_svg(
    prompt: str,
    style: str,
    model: str,
    api_token: str,
    model_owner: str = "openai",
) -> str:
    """Generate raw SVG markup using the Replicate API.

    Args:
        prompt: Sanitized prompt text
        style: Visual style name
        model: Accepted model name (see AiModel)
        api_token: Replicate API authentication token
        model_owner: Replicate account owning the model

    Returns:
        Raw (unsanitized) SVG markup

    Raises:
        GenerationError: Any failure; the message carries the upstream status and detail
    """
    if not api_token:
        raise GenerationError("Permission denied: REPLICATE_API_TOKEN not configured")

    reference = resolve_model_reference(model, model_owner)
    client = replicate.Client(api_token=api_token)

    def _run_replicate() -> Any:
        # SDK is synchronous; run in a worker thread
        return client.run(
            reference,
            input={
                "prompt": build_user_prompt(prompt, style),
                "system_prompt": SYSTEM_PROMPT,
            },
        )

    try:
        output = await asyncio.to_thread(_run_replicate)
    except ReplicateAPIError as e:
        status = getattr(e, "status", None)
        prefix = f"Replicate API error (status {status})" if status else "Replicate API error"
        raise GenerationError(f"{prefix}: {e}") from e
    except (ConnectionError, OSError, TimeoutError) as e:
        raise GenerationError(f"Connection error: {e}") from e

    return extract_svg(_join_output(output))
