"""
HuggingFace Client - Model loading and inference wrapper

Responsibilities:
- Load model with optional 4-bit quantization
- Apply the tokenizer's chat template to instruction prompts
- Generate text completions bounded by a wall-clock budget
- Generate JSON-formatted completions with basic repair

Design principles:
- Dependency injection (no singleton)
- Fail fast on critical errors (CUDA OOM, time budget exhausted)
- Model-agnostic (prompt content lives in prompt_builder)
"""

import logging
import time
from typing import Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, BitsAndBytesConfig

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_MAP_AUTO = "auto"


class GenerationTimeout(TimeoutError):
    """Generation was cut off by max_time before the model finished"""


class HuggingFaceClient:
    """Wrapper for HuggingFace causal LM inference"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA,
        default_max_time: Optional[float] = None
    ) -> None:
        """
        Initialize model and tokenizer

        Args:
            model_name: HuggingFace model identifier
            load_in_4bit: Use 4-bit NF4 quantization (CUDA only)
            device: "cuda" or "cpu"
            default_max_time: Seconds allowed per generate() call when the
                caller does not pass max_time (None = unbounded)

        Raises:
            RuntimeError: If CUDA requested but not available
        """
        self.model_name = model_name
        self.device = device
        self.default_max_time = default_max_time
        self.model = None
        self.tokenizer = None

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
        logger.info("HuggingFace client initialized successfully")

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    def _format_prompt(self, prompt: str) -> str:
        """Wrap a plain instruction in the tokenizer's chat template, if it has one"""
        if getattr(self.tokenizer, 'chat_template', None) is None:
            return prompt
        try:
            return self.tokenizer.apply_chat_template(
                [{"role": "user", "content": prompt}],
                tokenize=False,
                add_generation_prompt=True
            )
        except Exception as e:
            logger.warning(f"Chat template failed ({e}); sending raw prompt")
            return prompt

    def generate(
        self,
        prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.3,
        max_time: Optional[float] = None
    ) -> str:
        """
        Generate text completion from prompt

        Args:
            prompt: Plain instruction text
            max_tokens: Maximum new tokens
            temperature: Sampling temperature (0.0 = greedy)
            max_time: Wall-clock budget in seconds (falls back to default_max_time)

        Returns:
            Generated text with the prompt stripped

        Raises:
            RuntimeError: If model not loaded
            GenerationTimeout: If the budget ran out before the model stopped
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        budget = max_time if max_time is not None else self.default_max_time
        start_time = time.time()

        inputs = self.tokenizer(self._format_prompt(prompt), return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        prompt_tokens = inputs.input_ids.shape[1]

        generate_kwargs = {
            'max_new_tokens': max_tokens,
            'do_sample': temperature > 0,
            'pad_token_id': self.tokenizer.pad_token_id,
        }
        if temperature > 0:
            generate_kwargs['temperature'] = temperature
        if budget is not None:
            generate_kwargs['max_time'] = budget

        try:
            with torch.no_grad():
                outputs = self.model.generate(
                    inputs.input_ids,
                    attention_mask=inputs.attention_mask,
                    **generate_kwargs
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA OOM during generation (prompt tokens: {prompt_tokens}, max new: {max_tokens})")
            raise

        elapsed = time.time() - start_time
        generated_ids = outputs[0][prompt_tokens:]
        generated_text = self.tokenizer.decode(generated_ids, skip_special_tokens=True)

        if budget is not None and elapsed >= budget:
            logger.error(f"Generation exceeded {budget:.1f}s budget ({elapsed:.1f}s)")
            raise GenerationTimeout(f"Model generation exceeded {budget:.1f}s")

        logger.debug(f"Generated {len(generated_ids)} tokens in {elapsed:.1f}s")
        return generated_text

    def generate_json(
        self,
        prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.0,
        max_time: Optional[float] = None
    ) -> str:
        """
        Generate a completion expected to contain one JSON object

        Returns the repaired JSON string; the caller must json.loads() it.
        """
        text = self.generate(
            prompt=prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            max_time=max_time
        )
        return repair_json(text)


def repair_json(text: str) -> str:
    """
    Strip markdown fences and surrounding chatter from a JSON object reply

    Only handles a single top-level object. Unbalanced braces are closed
    or trimmed; anything worse is left for json.loads() to reject.

    Examples:
        >>> repair_json('```json\\n{"a": 1}\\n```')
        '{"a": 1}'
        >>> repair_json('Sure! {"a": {"b": 2}')
        '{"a": {"b": 2}}'
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    first_brace = text.find('{')
    last_brace = text.rfind('}')
    if first_brace == -1 or last_brace == -1:
        logger.warning("No braces found in JSON repair")
        return text

    text = text[first_brace:last_brace + 1]

    open_count = text.count('{')
    close_count = text.count('}')
    if open_count > close_count:
        text += '}' * (open_count - close_count)
    elif close_count > open_count:
        for _ in range(close_count - open_count):
            last_close = text.rfind('}')
            text = text[:last_close] + text[last_close + 1:]

    return text
