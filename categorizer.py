"""
Product categorizers consumed by the route sequencer.

- KeywordCategorizer: local regex table, synchronous, always answers
- LLMCategorizer: DeepSeek (OpenAI-compatible) chat completion, used as the
  asynchronous upgrade path. Never raises; returns a low-confidence default
  on any failure.
"""

import json
import logging
import re
from typing import List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field, ValidationError

from config import GENERIC_CATEGORY, RouteConfig
from plan_types import CategoryResult

logger = logging.getLogger(__name__)

LOW_CONFIDENCE = 0.1
PATTERN_CONFIDENCE = 0.7


class Categorizer(Protocol):
    def categorize(self, product_name: str) -> CategoryResult:
        ...


class KeywordCategorizer:
    """Keyword-pattern categorizer with a "Generic" catch-all"""

    def __init__(self, config: Optional[RouteConfig] = None):
        self.config = config or RouteConfig()
        self._patterns: List[Tuple[str, re.Pattern]] = [
            (category, re.compile(pattern, re.IGNORECASE))
            for category, pattern in self.config.category_patterns
        ]

    def categorize(self, product_name: str) -> CategoryResult:
        name = (product_name or "").lower().strip()
        for category, pattern in self._patterns:
            if pattern.search(name):
                return CategoryResult(category=category, confidence=PATTERN_CONFIDENCE)
        return CategoryResult(category=GENERIC_CATEGORY, confidence=LOW_CONFIDENCE)


# ============================================================================
# LLM CATEGORIZER
# ============================================================================

CATEGORIZE_PROMPT = """You are a grocery store assistant. Classify the product into exactly one store section.

Allowed sections: {sections}

Return ONLY a JSON object (no markdown, no extra text) in this exact format:
{{"category": "<one of the allowed sections>", "confidence": <number between 0 and 1>}}

Product: {product_name}"""


class LLMCategoryPayload(BaseModel):
    category: str
    confidence: float = Field(ge=0.0, le=1.0)


def _extract_json_from_response(response_text: str) -> str:
    """Pull the JSON object out of an LLM reply (handles ```json fences)."""
    text = response_text.strip()
    if "```json" in text:
        start = text.find("```json") + 7
        end = text.find("```", start)
        if end > start:
            text = text[start:end].strip()
    elif "```" in text:
        start = text.find("```") + 3
        end = text.find("```", start)
        if end > start:
            text = text[start:end].strip()
    if "{" in text and "}" in text:
        text = text[text.find("{"):text.rfind("}") + 1]
    return text


class LLMCategorizer:
    """Categorizer backed by DeepSeek through the OpenAI client"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[RouteConfig] = None,
        model: str = "deepseek-chat",
        client=None,
    ):
        """
        Initialize the LLM categorizer.

        Args:
            api_key: DeepSeek API key (ignored when a client is injected)
            config: Route configuration (supplies the allowed sections)
            model: Chat model name
            client: Pre-built OpenAI-compatible client (tests inject a fake)
        """
        self.config = config or RouteConfig()
        self.model = model
        if client is not None:
            self.client = client
        else:
            if not api_key:
                raise ValueError("DeepSeek API key not provided. Set DEEPSEEK_API_KEY or pass api_key")
            from openai import OpenAI
            self.client = OpenAI(api_key=api_key, base_url="https://api.deepseek.com")

    def categorize(self, product_name: str) -> CategoryResult:
        sections = ", ".join(spec.category for spec in self.config.aisles)
        prompt = CATEGORIZE_PROMPT.format(sections=sections, product_name=product_name)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You classify grocery products. Return only valid JSON."},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.0,
                max_tokens=60,
            )
            raw = response.choices[0].message.content or ""
            payload = LLMCategoryPayload.model_validate(json.loads(_extract_json_from_response(raw)))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"✗ Unparseable categorization for {product_name!r}: {e}")
            return CategoryResult(category=GENERIC_CATEGORY, confidence=0.0)
        except Exception as e:
            logger.warning(f"✗ LLM categorizer unavailable for {product_name!r}: {e}")
            return CategoryResult(category=GENERIC_CATEGORY, confidence=0.0)

        category = self.config.canonical_category(payload.category)
        if category is None:
            logger.debug(f"LLM returned unknown section {payload.category!r} for {product_name!r}")
            return CategoryResult(category=GENERIC_CATEGORY, confidence=0.0)
        return CategoryResult(category=category, confidence=payload.confidence)


if __name__ == "__main__":
    import os

    from dotenv import load_dotenv

    logging.basicConfig(level=logging.INFO)
    load_dotenv()

    products = ["Organic bananas", "Greek yogurt", "Kombucha", "Paper towels", "Sourdough loaf"]
    keyword = KeywordCategorizer()
    api_key = os.getenv("DEEPSEEK_API_KEY")
    llm = LLMCategorizer(api_key=api_key) if api_key else None

    for product in products:
        local = keyword.categorize(product)
        line = f"{product:20s} keyword: {local.category} ({local.confidence:.2f})"
        if llm is not None:
            remote = llm.categorize(product)
            line += f" | llm: {remote.category} ({remote.confidence:.2f})"
        print(line)
