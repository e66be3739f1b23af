"""
Guarded calls into the text-generation capability.

Every call runs under a caller-supplied timeout; adapter failures and
timeouts are translated into TransportError.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import anyio

from adapters.llm import GenerationOptions, LLMAdapter, LLMError

from .errors import TransportError

logger = logging.getLogger(__name__)


@contextmanager
def transport_guard(timeout: float, purpose: str) -> Iterator[None]:
    """
    Bound a block of text-generation work in time.

    Args:
        timeout: Seconds before the block is cancelled
        purpose: Short label used in error messages (e.g. "decision")

    Raises:
        TransportError: On timeout or adapter failure inside the block
    """
    try:
        with anyio.fail_after(timeout):
            yield
    except TimeoutError as e:
        logger.error(f"Text generation for {purpose} timed out after {timeout}s")
        raise TransportError(f"The language model did not answer within {timeout:g} seconds", e) from e
    except LLMError as e:
        logger.error(f"Text generation for {purpose} failed ({e.provider}): {e}")
        raise TransportError(f"The language model is unavailable: {e}", e) from e
    except OSError as e:
        logger.error(f"Text generation for {purpose} failed: {e}")
        raise TransportError(f"Could not reach the language model: {e}", e) from e


async def generate_text(
    llm: LLMAdapter,
    prompt: str,
    *,
    model: Optional[str],
    options: GenerationOptions,
    timeout: float,
    purpose: str,
    system_prompt: Optional[str] = None,
) -> str:
    """Run one non-streaming generation call under ``transport_guard``."""
    with transport_guard(timeout, purpose):
        text = await llm.generate(prompt, model=model, options=options, system_prompt=system_prompt)
    logger.debug(f"{purpose} response ({len(text)} chars)")
    return text
