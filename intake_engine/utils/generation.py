"""
Generation capability - structured output at a model-size tier

Responsibilities:
- Define the capability contract used by the engine:
  generate_structured(schema, prompt, system, tier) -> GenerationResult
- Define model tiers and the structured output schemas
- Provide the HuggingFace-backed implementation

Design principles:
- One failure type out: every error becomes GenerationFailure
- At most one result or one failure per call, no ordering guarantees
- No retries here (retry policy belongs to callers)
- No cancellation: a timed-out worker thread is left to finish
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from intake_engine.errors import GenerationFailure

logger = logging.getLogger(__name__)


class ModelTier(str, Enum):
    """
    Model-size tiers.

    SMALL: fast and cheap, short latency-sensitive outputs (reflections)
    LARGE: more capable, long structured outputs (completion)
    """
    SMALL = "small"
    LARGE = "large"


# Legacy model names still accepted by callers
LEGACY_TO_TIER = {
    "opus": ModelTier.LARGE,
    "sonnet": ModelTier.LARGE,
    "haiku": ModelTier.SMALL,
}

DEFAULT_TIER = ModelTier.LARGE


def normalize_tier(tier: Union[ModelTier, str, None]) -> ModelTier:
    """
    Normalize a tier or legacy model name to a ModelTier.

    Raises:
        ValueError: If the name is not a tier or legacy model
    """
    if tier is None:
        return DEFAULT_TIER
    if isinstance(tier, ModelTier):
        return tier
    if tier in LEGACY_TO_TIER:
        return LEGACY_TO_TIER[tier]
    return ModelTier(tier)


# =============================================================================
# Structured output schemas
# =============================================================================

FIELD_STRING = "string"
FIELD_STRING_LIST = "string_list"


@dataclass(frozen=True)
class SchemaField:
    name: str
    type: str
    description: str


@dataclass(frozen=True)
class StructuredSchema:
    """
    Required fields of a structured model output.

    Only two field types are needed by the engine: non-empty strings and
    non-empty lists of non-empty strings.
    """
    name: str
    fields: Tuple[SchemaField, ...]

    def instructions(self) -> str:
        """Output-format instructions appended to the user prompt"""
        lines = [
            "Respond with ONLY a JSON object, no commentary, with exactly these keys:"
        ]
        for schema_field in self.fields:
            kind = "string" if schema_field.type == FIELD_STRING else "array of strings"
            lines.append(f'- "{schema_field.name}" ({kind}): {schema_field.description}')
        return "\n".join(lines)

    def validate(self, data: Any) -> Dict[str, Any]:
        """
        Check parsed output against the schema.

        Returns:
            dict: Only the schema keys, strings stripped

        Raises:
            ValueError: On missing keys or wrong types
        """
        if not isinstance(data, dict):
            raise ValueError(f"{self.name}: expected JSON object, got {type(data).__name__}")

        result = {}
        for schema_field in self.fields:
            if schema_field.name not in data:
                raise ValueError(f"{self.name}: missing key '{schema_field.name}'")
            value = data[schema_field.name]

            if schema_field.type == FIELD_STRING:
                if not isinstance(value, str) or not value.strip():
                    raise ValueError(f"{self.name}: '{schema_field.name}' must be a non-empty string")
                result[schema_field.name] = value.strip()

            elif schema_field.type == FIELD_STRING_LIST:
                if not isinstance(value, list) or not value:
                    raise ValueError(f"{self.name}: '{schema_field.name}' must be a non-empty list")
                if not all(isinstance(item, str) and item.strip() for item in value):
                    raise ValueError(f"{self.name}: '{schema_field.name}' items must be non-empty strings")
                result[schema_field.name] = [item.strip() for item in value]

            else:
                raise ValueError(f"{self.name}: unknown field type {schema_field.type}")

        return result


REFLECTION_SCHEMA = StructuredSchema(
    name="intake_reflection",
    fields=(
        SchemaField(
            "reflection", FIELD_STRING,
            "A 1-2 sentence supportive response that reflects back the meaning, "
            "normalizes the experience, and encourages continuation"
        ),
    )
)

COMPLETION_SCHEMA = StructuredSchema(
    name="intake_completion",
    fields=(
        SchemaField(
            "personalized_brief", FIELD_STRING,
            "How therapy might help: normalizes the experience, links patterns to "
            "therapy mechanisms, includes example change trajectories, avoids guarantees"
        ),
        SchemaField(
            "first_session_guide", FIELD_STRING,
            "How to make the most of a first session: what to ask for, what to ask "
            "about, how to talk about goals, how to assess fit, with example phrases"
        ),
        SchemaField(
            "experiments", FIELD_STRING_LIST,
            "2-3 safe, personalized pre-therapy experiments: optional, low intensity, "
            "reversible, designed to be discussed in session one"
        ),
    )
)


# =============================================================================
# Capability contract
# =============================================================================

@dataclass(frozen=True)
class GenerationResult:
    data: Dict[str, Any]
    diagnostics: Dict[str, Any] = field(default_factory=dict)


class GenerationCapability:
    """
    Opaque text-generation capability.

    Subclasses implement generate_structured(). Implementations must raise
    GenerationFailure for every failure mode.
    """

    async def generate_structured(
        self,
        schema: StructuredSchema,
        prompt: str,
        system: Optional[str],
        tier: ModelTier
    ) -> GenerationResult:
        raise NotImplementedError


@dataclass(frozen=True)
class TierSettings:
    max_tokens: int
    temperature: float
    timeout: Optional[float] = None


DEFAULT_TIER_SETTINGS = {
    ModelTier.SMALL: TierSettings(max_tokens=200, temperature=0.5, timeout=60.0),
    ModelTier.LARGE: TierSettings(max_tokens=1600, temperature=0.3, timeout=300.0),
}


class HuggingFaceGeneration(GenerationCapability):
    """
    Generation capability backed by local HuggingFace models.

    Each tier maps to a client exposing generate_json(prompt, system,
    max_tokens, temperature, return_diagnostics). Blocking generation runs
    in a worker thread so the event loop never blocks.
    """

    def __init__(self, clients: Mapping[ModelTier, Any],
                 settings: Optional[Mapping[ModelTier, TierSettings]] = None):
        """
        Args:
            clients: Client per tier (the same client may serve both)
            settings: Per-tier token limit, temperature and timeout

        Raises:
            TypeError: If a client is missing or lacks generate_json()
        """
        for tier in ModelTier:
            client = clients.get(tier)
            if client is None:
                raise TypeError(f"No client configured for tier '{tier.value}'")
            if not callable(getattr(client, 'generate_json', None)):
                raise TypeError(f"Client for tier '{tier.value}' must have callable generate_json()")

        self.clients = dict(clients)
        self.settings = dict(DEFAULT_TIER_SETTINGS)
        if settings:
            self.settings.update(settings)

        logger.info(
            "HuggingFace generation initialized "
            f"(small={self._model_name(ModelTier.SMALL)}, large={self._model_name(ModelTier.LARGE)})"
        )

    @classmethod
    def from_config(cls, config) -> "HuggingFaceGeneration":
        """
        Load models described by an EngineConfig.

        Identical small/large model names share one loaded client.
        """
        from intake_engine.utils.hf_client import HuggingFaceClient

        small = HuggingFaceClient(
            model_name=config.small_model,
            load_in_4bit=config.load_in_4bit,
            device=config.device
        )
        if config.large_model == config.small_model:
            large = small
        else:
            large = HuggingFaceClient(
                model_name=config.large_model,
                load_in_4bit=config.load_in_4bit,
                device=config.device
            )

        small_defaults = DEFAULT_TIER_SETTINGS[ModelTier.SMALL]
        large_defaults = DEFAULT_TIER_SETTINGS[ModelTier.LARGE]
        settings = {
            ModelTier.SMALL: TierSettings(small_defaults.max_tokens, small_defaults.temperature,
                                          config.reflection_timeout),
            ModelTier.LARGE: TierSettings(large_defaults.max_tokens, large_defaults.temperature,
                                          config.completion_timeout),
        }
        return cls({ModelTier.SMALL: small, ModelTier.LARGE: large}, settings)

    def _model_name(self, tier: ModelTier) -> str:
        return getattr(self.clients[tier], 'model_name', type(self.clients[tier]).__name__)

    async def generate_structured(
        self,
        schema: StructuredSchema,
        prompt: str,
        system: Optional[str],
        tier: ModelTier
    ) -> GenerationResult:
        """
        Generate and validate a structured object.

        Raises:
            GenerationFailure: On model error, timeout, unparseable or
                schema-violating output
        """
        tier = normalize_tier(tier)
        client = self.clients[tier]
        settings = self.settings[tier]
        full_prompt = f"{prompt}\n\n{schema.instructions()}"

        logger.debug(f"[{schema.name}] prompt length {len(full_prompt)} chars, tier={tier.value}")
        start_time = time.time()

        call = asyncio.to_thread(
            client.generate_json,
            prompt=full_prompt,
            system=system,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            return_diagnostics=True
        )

        try:
            if settings.timeout:
                raw = await asyncio.wait_for(call, timeout=settings.timeout)
            else:
                raw = await call
        except asyncio.TimeoutError as e:
            logger.error(f"[{schema.name}] generation timed out after {settings.timeout}s")
            raise GenerationFailure(
                f"{schema.name} generation timed out after {settings.timeout}s",
                tier=tier.value, schema_name=schema.name
            ) from e
        except Exception as e:
            logger.error(f"[{schema.name}] generation failed: {type(e).__name__}: {e}")
            raise GenerationFailure(
                f"{schema.name} generation failed: {e}",
                tier=tier.value, schema_name=schema.name
            ) from e

        text = raw["text"] if isinstance(raw, dict) else raw
        diagnostics = dict(raw.get("diagnostics", {})) if isinstance(raw, dict) else {}

        try:
            data = schema.validate(json.loads(text))
        except json.JSONDecodeError as e:
            logger.error(f"[{schema.name}] unparseable output: {text[:200]!r}")
            raise GenerationFailure(
                f"{schema.name} output is not valid JSON: {e}",
                tier=tier.value, schema_name=schema.name
            ) from e
        except ValueError as e:
            logger.error(f"[{schema.name}] schema violation: {e}")
            raise GenerationFailure(
                f"{schema.name} output does not match schema: {e}",
                tier=tier.value, schema_name=schema.name
            ) from e

        diagnostics.update({
            "tier": tier.value,
            "duration_ms": (time.time() - start_time) * 1000,
        })
        logger.info(
            f"[{schema.name}] generated in {diagnostics['duration_ms']:.0f}ms "
            f"({diagnostics.get('total_tokens', '?')} tokens, tier={tier.value})"
        )
        return GenerationResult(data=data, diagnostics=diagnostics)
