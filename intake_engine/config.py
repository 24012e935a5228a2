"""
Engine configuration read from the environment.

All settings have working defaults so the console harness and the Flask
app start without any environment set up.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "mistralai/Mistral-7B-Instruct-v0.2"

TRUE_VALUES = {'true', 'yes', 'y', '1', 't'}


@dataclass(frozen=True)
class EngineConfig:
    """
    Attributes:
        definitions_dir: Directory of intake definition JSON files
        prompts_dir: Root of versioned prompt files
        prompt_version: Default prompt version (e.g. 'v1')
        small_model: Model used for the 'small' tier (reflections)
        large_model: Model used for the 'large' tier (completion)
        load_in_4bit: 4-bit quantization for model loading
        device: 'cuda' or 'cpu'
        reflection_timeout: Seconds before a reflection call is a failure
        completion_timeout: Seconds before a completion call is a failure
    """
    definitions_dir: str = "data/intakes"
    prompts_dir: str = "data/prompts"
    prompt_version: str = "v1"
    small_model: str = DEFAULT_MODEL
    large_model: str = DEFAULT_MODEL
    load_in_4bit: bool = True
    device: str = "cuda"
    reflection_timeout: Optional[float] = 60.0
    completion_timeout: Optional[float] = 300.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Build config from environment variables (INTAKE_*).

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Raises:
            ValueError: If a numeric setting cannot be parsed
        """
        env = os.environ if environ is None else environ

        config = cls(
            definitions_dir=env.get('INTAKE_DEFINITIONS_DIR', cls.definitions_dir),
            prompts_dir=env.get('INTAKE_PROMPTS_DIR', cls.prompts_dir),
            prompt_version=env.get('INTAKE_PROMPT_VERSION', cls.prompt_version),
            small_model=env.get('INTAKE_SMALL_MODEL', cls.small_model),
            large_model=env.get('INTAKE_LARGE_MODEL', cls.large_model),
            load_in_4bit=env.get('INTAKE_LOAD_IN_4BIT', 'true').strip().lower() in TRUE_VALUES,
            device=env.get('INTAKE_DEVICE', cls.device),
            reflection_timeout=_parse_timeout(env.get('INTAKE_REFLECTION_TIMEOUT'), cls.reflection_timeout),
            completion_timeout=_parse_timeout(env.get('INTAKE_COMPLETION_TIMEOUT'), cls.completion_timeout)
        )

        logger.debug(f"Engine config loaded: {config}")
        return config


def _parse_timeout(raw: Optional[str], default: Optional[float]) -> Optional[float]:
    """Empty string or '0' disables the timeout"""
    if raw is None:
        return default
    raw = raw.strip()
    if raw == '' or raw == '0':
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Invalid timeout value: {raw!r}")
    if value < 0:
        raise ValueError(f"Timeout must be positive, got {value}")
    return value
