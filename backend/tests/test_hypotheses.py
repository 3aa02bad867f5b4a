"""Tests for the language-model hypothesis source."""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from sitelift.models.experiment import ChangeType
from sitelift.services.errors import HypothesisGenerationError
from sitelift.services.hypotheses import LLMHypothesisSource, parse_hypotheses, validate_candidates

METRICS = {
    "period_days": 14,
    "conversion_rate": 0.031,
    "add_to_cart_rate": 0.12,
    "cart_to_order_rate": 0.4,
    "avg_time_on_page": 42.0
}


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.fixture
def source(client):
    return LLMHypothesisSource(api_key="sk-test", model="gpt-4o-mini", client=client)


def item(hypothesis="Bigger button", change_type="cta", priority=7):
    return {
        "hypothesis": hypothesis,
        "changeType": change_type,
        "variantPrompt": f"Do: {hypothesis}",
        "variantDescription": hypothesis,
        "priority": priority
    }


@pytest.mark.asyncio
async def test_generate_hypotheses(source, client):
    client.chat.completions.create.return_value = completion(
        json.dumps({"hypotheses": [item("Bigger button"), item("Hero video", "HERO", 12)]})
    )

    candidates = await source.generate_hypotheses("rest_1", METRICS, [], [], 2)

    assert [c.hypothesis for c in candidates] == ["Bigger button", "Hero video"]
    assert candidates[1].change_type == ChangeType.HERO
    assert candidates[1].priority == 10

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert "Generate 2 DIFFERENT hypotheses" in kwargs["messages"][1]["content"]
    assert "3.10%" in kwargs["messages"][1]["content"]


@pytest.mark.asyncio
async def test_generate_hypotheses_truncates_to_count(source, client):
    client.chat.completions.create.return_value = completion(
        json.dumps([item(f"idea {i}") for i in range(4)])
    )

    candidates = await source.generate_hypotheses("rest_1", METRICS, [], [], 2)

    assert len(candidates) == 2


@pytest.mark.asyncio
async def test_generate_hypotheses_api_error(source, client):
    client.chat.completions.create.side_effect = openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    )

    with pytest.raises(HypothesisGenerationError):
        await source.generate_hypotheses("rest_1", METRICS, [], [], 3)


def test_prompt_lists_tried_and_queued_hypotheses(source):
    queued = [SimpleNamespace(hypothesis="Queued idea")]
    learnings = [{"hypothesis": "Old idea", "result": "no_effect"}]

    prompt = source.build_prompt("rest_1", METRICS, learnings, queued, 3)

    assert "- Old idea" in prompt
    assert "- Queued idea" in prompt
    assert "Avg Time on Page: 42s" in prompt


def test_parse_strips_code_fences():
    content = "```json\n" + json.dumps({"hypotheses": [item()]}) + "\n```"

    assert parse_hypotheses(content) == [item()]


def test_parse_single_object():
    assert parse_hypotheses(json.dumps(item())) == [item()]


def test_parse_invalid_json():
    with pytest.raises(HypothesisGenerationError):
        parse_hypotheses("Sure! Here are some ideas:")


def test_parse_rejects_scalar():
    with pytest.raises(HypothesisGenerationError):
        parse_hypotheses("42")


def test_validate_discards_bad_items():
    items = [
        item("Valid"),
        item("Unknown area", change_type="footer"),
        {"hypothesis": "No prompt", "changeType": "cta"},
        "not an object"
    ]

    candidates = validate_candidates(items, "rest_1")

    assert [c.hypothesis for c in candidates] == ["Valid"]
