"""Prompt diversification for image variations.

A parent prompt is sent to an OpenAI model with a strict JSON schema and comes
back as a list of distinct, more detailed prompts, one per variation slot.
Failures are reported in :attr:`PromptVariants.error` instead of raised.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from openai import AsyncOpenAI

from promptcanvas.core.config import CanvasConfig

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a creative assistant that generates four distinct image prompt variations. "
    "Your prompts should be detailed and vary the content and style."
)

VARIANTS_SCHEMA = {
    "type": "object",
    "properties": {
        "variants": {
            "type": "array",
            "items": {"type": "string"},
        },
    },
    "required": ["variants"],
    "additionalProperties": False,
}


@dataclass(frozen=True)
class PromptVariants:
    variants: list[str] = field(default_factory=list)
    error: str | None = None


class PromptVariantClient:
    """Ask an OpenAI model for variations of a prompt.

    The ``AsyncOpenAI`` client is created on first use so a missing API key
    surfaces as an error result on the variation path rather than at startup.
    """

    def __init__(self, config: CanvasConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._config.openai_api_key)
        return self._client

    async def get_prompt_variants(self, prompt: str) -> PromptVariants:
        """Return prompt variations for *prompt*.

        Args:
            prompt: The original user prompt.

        Returns:
            :class:`PromptVariants` with ``variants`` on success, or an empty
            list and ``error`` on failure.
        """
        try:
            response = await self._get_client().responses.create(
                model=self._config.openai_model,
                input=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f'Original prompt: "{prompt}"'},
                ],
                text={
                    "format": {
                        "type": "json_schema",
                        "name": "prompt_variants",
                        "schema": VARIANTS_SCHEMA,
                        "strict": True,
                    }
                },
            )
            output = json.loads(response.output_text)
        except Exception as exc:
            logger.exception("Error augmenting prompt %r", prompt)
            return PromptVariants(
                error=str(exc) or "An unknown error occurred during prompt augmentation."
            )

        variants = output.get("variants") if isinstance(output, dict) else None
        if not isinstance(variants, list):
            logger.warning(
                "Response parsed but 'variants' array is missing (prompt=%r, output=%r).",
                prompt,
                response.output_text,
            )
            return PromptVariants(error="Failed to extract prompt variants from OpenAI response.")

        cleaned = [str(v).strip() for v in variants if str(v).strip()]
        logger.info("Augmented prompt %r into %d variants.", prompt, len(cleaned))
        return PromptVariants(variants=cleaned)
