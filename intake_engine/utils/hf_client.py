"""
HuggingFace Client - Model loading and inference wrapper

Responsibilities:
- Load model with optional 4-bit quantization
- Generate text completions from a user prompt plus optional system part
- Generate JSON-formatted completions with repair
- Serialize concurrent generate() calls on one loaded model
- Optional diagnostics (token counts, latency)

Design principles:
- Dependency injection (no singleton)
- Fail fast on critical errors (CUDA OOM)
- Blocking API: async callers run it in a worker thread
"""

import logging
import threading
import time
from typing import Any, Dict, Optional, Union

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig
)

from intake_engine.utils.helpers import repair_json
from intake_engine.utils.prompt_formatter import PromptFormatter

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"
DEVICE_MAP_AUTO = "auto"


class HuggingFaceClient:
    """Wrapper for HuggingFace model inference"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA,
        auto_format: bool = True
    ) -> None:
        """
        Initialize model and tokenizer

        Args:
            model_name: HuggingFace model identifier
            load_in_4bit: Use 4-bit quantization (saves VRAM, CUDA only)
            device: Device to use ("cuda" or "cpu")
            auto_format: Apply model-family prompt formatting

        Raises:
            RuntimeError: If CUDA requested but not available
        """
        self.model_name = model_name
        self.device = device
        self.auto_format = auto_format
        self.formatter: Optional[PromptFormatter] = None
        self._generate_lock = threading.Lock()

        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        logger.info(f"Loading model: {model_name} (device={device}, 4-bit={load_in_4bit})")

        quantization_config = None
        if load_in_4bit and device == DEVICE_CUDA:
            quantization_config = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_compute_dtype=torch.bfloat16,
                bnb_4bit_use_double_quant=True
            )

        try:
            self.tokenizer = AutoTokenizer.from_pretrained(model_name)

            if self.tokenizer.pad_token is None:
                if self.tokenizer.eos_token is not None:
                    self.tokenizer.pad_token = self.tokenizer.eos_token
                else:
                    self.tokenizer.add_special_tokens({'pad_token': '[PAD]'})
                    logger.warning("Added new [PAD] token as pad_token")

        except Exception as e:
            logger.error(f"Failed to load tokenizer: {e}")
            raise

        if auto_format:
            self.formatter = PromptFormatter(model_name, self.tokenizer)
            logger.info(f"Prompt formatter initialized: {self.formatter.get_info()}")

        try:
            self.model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map=DEVICE_MAP_AUTO if device == DEVICE_CUDA else None,
                torch_dtype=torch.bfloat16 if device == DEVICE_CUDA else torch.float32
            )
        except torch.cuda.OutOfMemoryError:
            logger.error("CUDA Out of Memory during model loading")
            raise
        except Exception as e:
            logger.error(f"Failed to load model: {e}")
            raise

        self.model.eval()
        self._log_cuda_memory("after model load")
        logger.info(f"HuggingFace client ready: {model_name}")

    def _log_cuda_memory(self, stage: str) -> None:
        if self.device == DEVICE_CUDA and torch.cuda.is_available():
            allocated = torch.cuda.memory_allocated() / 1e9
            reserved = torch.cuda.memory_reserved() / 1e9
            logger.debug(
                f"GPU memory {stage}: {allocated:.2f}GB allocated, {reserved:.2f}GB reserved"
            )

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 256,
        temperature: float = 0.3,
        return_diagnostics: bool = False
    ) -> Union[str, Dict[str, Any]]:
        """
        Generate text completion from prompt

        Args:
            prompt: User prompt (plain text)
            system: Optional system instructions
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature (0.0 = greedy)
            return_diagnostics: Include token counts and timing

        Returns:
            str: Generated text (if return_diagnostics=False)
            dict: {'text': str, 'diagnostics': {...}} (if return_diagnostics=True)

        Raises:
            RuntimeError: If model not loaded
            torch.cuda.OutOfMemoryError: If GPU runs out of memory
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        start_time = time.time()

        if self.formatter:
            full_prompt = self.formatter.format_instruction(prompt, system=system)
        else:
            full_prompt = PromptFormatter.merge_system(prompt, system)

        inputs = self.tokenizer(full_prompt, return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)

        prompt_tokens = inputs.input_ids.shape[1]

        # One generation at a time per loaded model
        with self._generate_lock:
            try:
                with torch.no_grad():
                    outputs = self.model.generate(
                        inputs.input_ids,
                        attention_mask=inputs.attention_mask,
                        max_new_tokens=max_tokens,
                        temperature=temperature if temperature > 0 else None,
                        do_sample=temperature > 0,
                        pad_token_id=self.tokenizer.pad_token_id
                    )
            except torch.cuda.OutOfMemoryError:
                logger.error(f"CUDA OOM during generation (prompt tokens: {prompt_tokens})")
                raise

        generated_ids = outputs[0][prompt_tokens:]
        generated_text = self.tokenizer.decode(generated_ids, skip_special_tokens=True)

        elapsed_ms = (time.time() - start_time) * 1000
        completion_tokens = len([
            t for t in generated_ids
            if t != self.tokenizer.pad_token_id
        ])

        if return_diagnostics:
            return {
                "text": generated_text,
                "diagnostics": {
                    "model": self.model_name,
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                    "latency_ms": elapsed_ms
                }
            }

        return generated_text

    def generate_json(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 256,
        temperature: float = 0.0,
        return_diagnostics: bool = False
    ) -> Union[str, Dict[str, Any]]:
        """
        Generate JSON-formatted completion with repair attempts

        Note: This returns a string, not parsed JSON. Caller must json.loads().
        """
        result = self.generate(
            prompt=prompt,
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
            return_diagnostics=return_diagnostics
        )

        text = result["text"] if return_diagnostics else result
        repaired = repair_json(text)

        if return_diagnostics:
            diagnostics = result["diagnostics"]
            diagnostics["json_repair_applied"] = repaired != text.strip()
            return {"text": repaired, "diagnostics": diagnostics}

        return repaired

    def get_model_info(self) -> Dict[str, Any]:
        info = {
            "model_name": self.model_name,
            "device": self.device,
            "is_loaded": self.is_loaded(),
            "auto_format": self.auto_format
        }
        if self.formatter:
            info["formatter"] = self.formatter.get_info()
        return info
