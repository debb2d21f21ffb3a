"""Structured output classification.

A response generated against a schema is parsed and checked for the schema's
required top-level fields. A response in the wrong shape is still a usable
answer: it comes back as a success with is_structured=False and the raw text
untouched.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .models import GenerationSuccess, StructuredOutputSchema

logger = logging.getLogger(__name__)


def parse_json_output(text: str) -> Any:
    """Parse JSON from LLM output, stripping markdown fences.

    Raises json.JSONDecodeError when the text is not JSON.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return json.loads(cleaned)


def validate_structured_output(
    response: str, schema: StructuredOutputSchema
) -> GenerationSuccess:
    try:
        data = parse_json_output(response)
    except json.JSONDecodeError as e:
        logger.warning("structured output %s is not valid JSON: %s", schema.name, e)
        return GenerationSuccess(response=response, is_structured=False)

    required = schema.required_fields()
    if required:
        if not isinstance(data, dict):
            logger.warning(
                "structured output %s is a %s, expected an object",
                schema.name, type(data).__name__,
            )
            return GenerationSuccess(response=response, is_structured=False)
        missing = [field for field in required if field not in data]
        if missing:
            logger.warning("structured output %s missing fields %s", schema.name, missing)
            return GenerationSuccess(response=response, is_structured=False)

    return GenerationSuccess(response=response, is_structured=True)
