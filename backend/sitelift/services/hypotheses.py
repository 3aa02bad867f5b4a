"""Hypothesis source: asks the language model for candidate experiments."""
import json
import re
from typing import Dict, Iterable, List, Optional

import openai
import structlog
from pydantic import ValidationError

from sitelift.config import get_settings
from sitelift.schemas.hypothesis import HypothesisCandidate
from sitelift.services.errors import HypothesisGenerationError

logger = structlog.get_logger()

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

SYSTEM_PROMPT = (
    "You are an A/B testing expert for restaurant websites. "
    "You answer with JSON only."
)


class LLMHypothesisSource:
    """Generates ranked experiment hypotheses with OpenAI chat completions."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client=None):
        self.client = client or openai.AsyncOpenAI(api_key=api_key)
        self.model = model

    def build_prompt(
        self,
        restaurant_id: str,
        metrics: Dict,
        learnings: List[Dict],
        existing_queue: Iterable,
        count: int
    ) -> str:
        """Prompt with the restaurant's funnel numbers and what not to repeat."""
        already_tried = [l.get("hypothesis") for l in learnings if l.get("hypothesis")]
        already_tried += [_hypothesis_text(item) for item in existing_queue]
        avoid = "\n".join(f"- {h}" for h in already_tried[-10:]) or "- none"

        return f"""Generate {count} DIFFERENT hypotheses for testing on restaurant site {restaurant_id}.

METRICS (last {metrics.get('period_days', 14)} days):
- Conversion Rate: {metrics.get('conversion_rate', 0) * 100:.2f}%
- Add to Cart: {metrics.get('add_to_cart_rate', 0) * 100:.2f}%
- Cart to Order: {metrics.get('cart_to_order_rate', 0) * 100:.2f}%
- Avg Time on Page: {metrics.get('avg_time_on_page', 0):.0f}s

ALREADY TESTED/QUEUED (avoid these):
{avoid}

Return a JSON object of the form:
{{"hypotheses": [
  {{
    "hypothesis": "...",
    "changeType": "cta|hero|layout|copy|color|menu",
    "variantPrompt": "Specific change instruction",
    "variantDescription": "Human-readable description",
    "priority": 1-10
  }}
]}}

Prioritize by expected impact. Focus on different aspects of the site."""

    async def generate_hypotheses(
        self,
        restaurant_id: str,
        metrics: Dict,
        learnings: List[Dict],
        existing_queue: Iterable,
        count: int
    ) -> List[HypothesisCandidate]:
        """
        Ask the model for ``count`` hypotheses.

        Items that fail validation are dropped, so fewer than ``count`` may
        come back.

        Raises:
            HypothesisGenerationError: If the API call fails or the reply is not JSON
        """
        prompt = self.build_prompt(restaurant_id, metrics, learnings, existing_queue, count)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt}
                ],
                temperature=0.8,
                response_format={"type": "json_object"}
            )
        except openai.OpenAIError as e:
            raise HypothesisGenerationError(f"Hypothesis generation failed: {e}") from e

        content = response.choices[0].message.content or ""
        items = parse_hypotheses(content)
        return validate_candidates(items, restaurant_id)[:count]


def parse_hypotheses(content: str) -> List:
    """Decode the model reply. Accepts a bare list or ``{"hypotheses": [...]}``."""
    text = _FENCE.sub("", content.strip()).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise HypothesisGenerationError(f"Model returned invalid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("hypotheses", [data] if "hypothesis" in data else [])
    if not isinstance(data, list):
        raise HypothesisGenerationError("Model reply is not a list of hypotheses")
    return data


def validate_candidates(items: List, restaurant_id: Optional[str] = None) -> List[HypothesisCandidate]:
    candidates = []
    for item in items:
        try:
            candidates.append(HypothesisCandidate.model_validate(item))
        except ValidationError as e:
            logger.warning(
                "hypothesis_discarded",
                restaurant_id=restaurant_id,
                errors=e.error_count(),
                item=str(item)[:200]
            )
    return candidates


def _hypothesis_text(item) -> str:
    if isinstance(item, dict):
        return item.get("hypothesis", "")
    return getattr(item, "hypothesis", "")


_hypothesis_source: Optional[LLMHypothesisSource] = None


def get_hypothesis_source() -> LLMHypothesisSource:
    """Get or create the global hypothesis source."""
    global _hypothesis_source
    if _hypothesis_source is None:
        settings = get_settings()
        _hypothesis_source = LLMHypothesisSource(
            api_key=settings.openai_api_key,
            model=settings.openai_model
        )
    return _hypothesis_source
