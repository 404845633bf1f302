"""Completion and web price-search adapters.

Both are thin: retries and throttling are handled by the gateway, and the
prompts live with the components that use them.
"""

from __future__ import annotations

import json
import logging
from typing import Protocol, TypeVar, overload

import openai
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from obracalc.config import get_config
from obracalc.core.errors import ExternalServiceError
from obracalc.models import PriceEstimate

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class Completer(Protocol):
    """Completion service contract: prompt in, text or structured output out."""

    @overload
    async def complete(self, prompt: str, schema: None = None) -> str: ...

    @overload
    async def complete(self, prompt: str, schema: type[M]) -> M: ...

    async def complete(self, prompt: str, schema: type[M] | None = None) -> M | str: ...


class PriceSearcher(Protocol):
    """Web price-search contract."""

    async def search(self, query: str) -> PriceEstimate: ...


class OpenAICompleter:
    """Chat completion client returning validated pydantic models on request."""

    SYSTEM_PROMPT = (
        "You are an expert construction cost estimator for renovation projects in Spain. "
        "Prices are Material Execution Prices (PEM) in EUR, without taxes."
    )

    def __init__(
        self,
        client: openai.AsyncOpenAI | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ):
        llm_config = get_config().llm
        self.client = client or openai.AsyncOpenAI(api_key=llm_config.api_key)
        self.model = model or llm_config.llm_model
        self.temperature = llm_config.temperature if temperature is None else temperature

    async def complete(self, prompt, schema=None):
        messages = [{"role": "system", "content": self.SYSTEM_PROMPT}]
        kwargs = {}

        if schema is not None:
            messages.append({
                "role": "system",
                "content": "Return only a JSON object matching this JSON schema:\n"
                + json.dumps(schema.model_json_schema()),
            })
            kwargs["response_format"] = {"type": "json_object"}

        messages.append({"role": "user", "content": prompt})

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            **kwargs,
        )
        content = response.choices[0].message.content or ""

        if schema is None:
            return content

        try:
            return schema.model_validate_json(content)
        except PydanticValidationError as e:
            logger.error(f"Completion did not match {schema.__name__}: {e}")
            raise ExternalServiceError(f"Invalid structured output for {schema.__name__}") from e


class LLMPriceSearcher:
    """Market price lookup backed by the completion service.

    No live search API is assumed; the completion model estimates the current
    market price and reports its own confidence.
    """

    PROMPT = """The user is asking for the price of: "{query}".
This item was NOT found in the reference price book, so estimate it from current market knowledge in Spain.

Return a JSON object with:
- description: a technical description of the item
- price: estimated Material Execution Price (PEM) per unit in EUR
- unit: the standard unit (m2, u, m, h, kg...)
- source: cite "Estimación de mercado" or a known database if applicable
- source_url: a URL if you know a specific source, otherwise null
- confidence: 0.0 to 1.0

Example:
Input: "Ventana PVC"
Output: {{"description": "Ventana PVC oscilobatiente 1x1 m doble acristalamiento", "price": 350.00, "unit": "u", "source": "Estimación de mercado", "source_url": null, "confidence": 0.9}}
"""

    def __init__(self, completer: Completer):
        self.completer = completer

    async def search(self, query: str) -> PriceEstimate:
        return await self.completer.complete(self.PROMPT.format(query=query), PriceEstimate)
