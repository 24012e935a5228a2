"""
Unit tests for the HuggingFace generation capability

Uses mock clients; no model is loaded.
"""

import asyncio
import json
import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intake_engine.config import EngineConfig
from intake_engine.errors import GenerationFailure
from intake_engine.utils.generation import (
    COMPLETION_SCHEMA,
    REFLECTION_SCHEMA,
    HuggingFaceGeneration,
    ModelTier,
    TierSettings,
    normalize_tier,
)


class MockHFClient:
    """Mock HuggingFace client returning canned text"""

    def __init__(self, text, model_name="mock-model"):
        self.text = text
        self.model_name = model_name
        self.calls = []

    def generate_json(self, prompt, system=None, max_tokens=256, temperature=0.0,
                      return_diagnostics=False):
        self.calls.append({
            'prompt': prompt,
            'system': system,
            'max_tokens': max_tokens,
            'temperature': temperature,
        })
        if return_diagnostics:
            return {'text': self.text, 'diagnostics': {'total_tokens': 42}}
        return self.text


class BlockingClient(MockHFClient):
    """Blocks until released (for timeout tests)"""

    def __init__(self):
        super().__init__('{"reflection": "late"}')
        self.release = threading.Event()

    def generate_json(self, *args, **kwargs):
        self.release.wait(timeout=5)
        return super().generate_json(*args, **kwargs)


class RaisingClient(MockHFClient):

    def generate_json(self, *args, **kwargs):
        raise RuntimeError("CUDA exploded")


def make_generation(small, large=None, settings=None):
    return HuggingFaceGeneration({ModelTier.SMALL: small, ModelTier.LARGE: large or small}, settings)


def generate(generation, schema=REFLECTION_SCHEMA, tier=ModelTier.SMALL):
    return asyncio.run(generation.generate_structured(schema, "user prompt", "system prompt", tier))


# ========================
# Tiers
# ========================

def test_normalize_tier():
    assert normalize_tier("haiku") == ModelTier.SMALL
    assert normalize_tier("sonnet") == ModelTier.LARGE
    assert normalize_tier("opus") == ModelTier.LARGE
    assert normalize_tier("small") == ModelTier.SMALL
    assert normalize_tier(None) == ModelTier.LARGE
    with pytest.raises(ValueError):
        normalize_tier("gigantic")


# ========================
# Successful generation
# ========================

def test_reflection_success():
    client = MockHFClient('{"reflection": "  That sounds heavy.  "}')
    result = generate(make_generation(client))

    assert result.data == {"reflection": "That sounds heavy."}
    assert result.diagnostics['tier'] == "small"
    assert result.diagnostics['total_tokens'] == 42

    call = client.calls[0]
    assert call['system'] == "system prompt"
    assert call['prompt'].startswith("user prompt")
    assert '"reflection"' in call['prompt']
    assert call['max_tokens'] == 200


def test_tier_routes_to_client():
    small = MockHFClient('{"reflection": "small"}', model_name="small-model")
    large = MockHFClient(json.dumps({
        "personalized_brief": "brief",
        "first_session_guide": "guide",
        "experiments": ["one", "two"],
    }), model_name="large-model")

    result = generate(make_generation(small, large), COMPLETION_SCHEMA, ModelTier.LARGE)

    assert result.data['experiments'] == ["one", "two"]
    assert small.calls == []
    assert large.calls[0]['max_tokens'] == 1600


def test_legacy_tier_name_accepted():
    client = MockHFClient('{"reflection": "ok"}')
    result = generate(make_generation(client), tier="haiku")
    assert result.diagnostics['tier'] == "small"


# ========================
# Failures
# ========================

def test_unparseable_output():
    with pytest.raises(GenerationFailure) as exc_info:
        generate(make_generation(MockHFClient("I'm sorry, I can't do that")))

    assert exc_info.value.schema_name == REFLECTION_SCHEMA.name
    assert exc_info.value.tier == "small"
    assert isinstance(exc_info.value.__cause__, json.JSONDecodeError)


def test_schema_violation():
    with pytest.raises(GenerationFailure) as exc_info:
        generate(make_generation(MockHFClient('{"reply": "wrong key"}')))
    assert isinstance(exc_info.value.__cause__, ValueError)


def test_empty_experiments_rejected():
    client = MockHFClient(json.dumps({
        "personalized_brief": "brief",
        "first_session_guide": "guide",
        "experiments": [],
    }))
    with pytest.raises(GenerationFailure):
        generate(make_generation(client), COMPLETION_SCHEMA, ModelTier.LARGE)


def test_client_error_wrapped():
    with pytest.raises(GenerationFailure) as exc_info:
        generate(make_generation(RaisingClient("")))
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert exc_info.value.retryable is True


def test_timeout_becomes_failure():
    client = BlockingClient()
    settings = {ModelTier.SMALL: TierSettings(max_tokens=10, temperature=0.0, timeout=0.05)}
    generation = make_generation(client, settings=settings)

    async def scenario():
        try:
            await generation.generate_structured(REFLECTION_SCHEMA, "p", None, ModelTier.SMALL)
        finally:
            client.release.set()

    with pytest.raises(GenerationFailure) as exc_info:
        asyncio.run(scenario())
    assert "timed out" in str(exc_info.value)


# ========================
# Construction
# ========================

def test_client_without_generate_json_rejected():
    with pytest.raises(TypeError):
        HuggingFaceGeneration({ModelTier.SMALL: object(), ModelTier.LARGE: object()})


def test_missing_tier_rejected():
    with pytest.raises(TypeError):
        HuggingFaceGeneration({ModelTier.SMALL: MockHFClient("{}")})


def test_from_config_shares_identical_models(monkeypatch):
    hf_client = pytest.importorskip("intake_engine.utils.hf_client")
    created = []

    def fake_client(model_name, load_in_4bit, device):
        client = MockHFClient("{}", model_name=model_name)
        created.append(client)
        return client

    monkeypatch.setattr(hf_client, "HuggingFaceClient", fake_client)

    shared = HuggingFaceGeneration.from_config(EngineConfig(completion_timeout=None))
    assert len(created) == 1
    assert shared.clients[ModelTier.SMALL] is shared.clients[ModelTier.LARGE]
    assert shared.settings[ModelTier.LARGE].timeout is None

    created.clear()
    HuggingFaceGeneration.from_config(EngineConfig(small_model="a", large_model="b"))
    assert [c.model_name for c in created] == ["a", "b"]
