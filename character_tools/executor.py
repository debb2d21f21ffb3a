"""Runs one generation attempt and reports every outcome as a GenerationResult."""

from __future__ import annotations

import logging

from .cancellation import CANCELLED_MESSAGE, CancellationToken, GenerationAborted
from .llm import GenerationTransport
from .models import GenerationFailure, GenerationResult, GenerationSuccess, StructuredOutputSchema

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_MESSAGE = "Empty response from API"


async def execute_generation(
    transport: GenerationTransport,
    system_prompt: str,
    user_prompt: str,
    schema: StructuredOutputSchema | None,
    token: CancellationToken,
    use_host_default: bool,
) -> GenerationResult:
    """Call the transport once. Never raises.

    Cancellation observed at any point wins over every other outcome,
    including a response that already arrived.
    """
    if token.cancelled:
        return GenerationFailure(error=CANCELLED_MESSAGE)

    try:
        response = await transport.generate(
            system_prompt, user_prompt, schema, token, use_host_default,
        )
    except GenerationAborted:
        logger.info("generation aborted")
        return GenerationFailure(error=CANCELLED_MESSAGE)
    except Exception as e:
        if token.cancelled:
            logger.info("generation aborted (%s)", e)
            return GenerationFailure(error=CANCELLED_MESSAGE)
        logger.warning("generation failed: %s", e)
        return GenerationFailure(error=str(e) or type(e).__name__)

    if token.cancelled:
        return GenerationFailure(error=CANCELLED_MESSAGE)

    if not response or not response.strip():
        logger.warning("generation returned an empty response")
        return GenerationFailure(error=EMPTY_RESPONSE_MESSAGE)

    logger.debug("generation complete len=%d structured=%s", len(response), schema is not None)
    return GenerationSuccess(response=response, is_structured=schema is not None)
