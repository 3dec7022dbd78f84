"""Request-boundary validation for image generation.

Validates the prompt and folds legacy parameter names into the canonical
GenerationParameters before a record is created.
"""

import math
from typing import Any, Mapping

from pydantic import ValidationError

from pixcraft.models.generation import (
    PROMPT_MAX_LENGTH,
    GenerationParameters,
    credits_for_image_count,
)
from pixcraft.services.exceptions import InvalidGenerationRequest

# canonical field -> accepted input names, first match wins
PARAMETER_ALIASES: dict[str, tuple[str, ...]] = {
    "width": ("width",),
    "height": ("height",),
    "guidance_scale": ("guidance_scale", "guidanceScale"),
    "num_inference_steps": ("num_inference_steps", "steps", "numInferenceSteps"),
    "seed": ("seed",),
    "style": ("style",),
    "negative_prompt": ("negative_prompt", "negativePrompt"),
    "quality": ("quality",),
    "image_count": ("image_count", "imageCount", "num_images"),
}

_INT_FIELDS = {"width", "height", "num_inference_steps", "quality", "image_count", "seed"}
_FLOAT_FIELDS = {"guidance_scale"}


def validate_prompt(prompt: Any) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Text prompt from the request

    Returns:
        Prompt with surrounding whitespace removed

    Raises:
        InvalidGenerationRequest: If prompt is missing, not a string, blank,
            or exceeds 1000 characters
    """
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidGenerationRequest("Prompt is required and cannot be empty")

    prompt = prompt.strip()
    if len(prompt) > PROMPT_MAX_LENGTH:
        raise InvalidGenerationRequest(
            f"Prompt exceeds maximum length of {PROMPT_MAX_LENGTH} characters (got {len(prompt)})"
        )

    return prompt


def _coerce(field: str, value: Any) -> Any:
    """Best-effort numeric coercion; unparsable values fall back to the default.

    Raises:
        InvalidGenerationRequest: If the value is an infinite, NaN or
            out-of-range number
    """
    if value is None or value == "":
        return None
    if field not in _INT_FIELDS and field not in _FLOAT_FIELDS:
        return value

    try:
        number = float(value)
    except OverflowError:
        raise InvalidGenerationRequest(f"Invalid generation parameters: {field} is out of range")
    except (TypeError, ValueError):
        return None

    if not math.isfinite(number):
        raise InvalidGenerationRequest(
            f"Invalid generation parameters: {field} must be a finite number"
        )
    return int(number) if field in _INT_FIELDS else number


def normalize_parameters(raw: Mapping[str, Any] | None) -> GenerationParameters:
    """Build canonical parameters from a request's parameter mapping.

    Accepts both current and legacy field names. ``image_count`` is clamped
    to 1..4; every other field must be within range.

    Raises:
        InvalidGenerationRequest: If a field is out of range
    """
    raw = raw or {}
    values: dict[str, Any] = {}

    for field, names in PARAMETER_ALIASES.items():
        for name in names:
            if name in raw:
                coerced = _coerce(field, raw[name])
                if coerced is not None:
                    values[field] = coerced
                break

    values["image_count"] = credits_for_image_count(values.get("image_count"))

    try:
        return GenerationParameters(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidGenerationRequest(f"Invalid generation parameters: {problems}") from e
