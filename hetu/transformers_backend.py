"""
Transformers Backend

Runs GGUF language models through transformers/torch and hosts ONNX speech models in
onnxruntime. Implements the InferenceBackend interface used by the session manager.
"""

import asyncio
import os
from typing import AsyncGenerator, Dict, Optional

import onnxruntime
import torch
from loguru import logger
from transformers import AutoModelForCausalLM, AutoTokenizer

from .backend import ModelHandle, path_from_uri
from .descriptors import InferenceFramework, ModelCategory
from .errors import (
    BackendUnavailableError,
    GenerationFailedError,
    LoadFailedError,
    RegistrationFailedError,
)


class TransformersBackend:
    """Local inference backend with one language and one speech model slot."""

    def __init__(
        self,
        device: str = "auto",
        max_new_tokens: int = 512,
        temperature: float = 0.7,
        top_p: float = 0.9,
    ):
        self.requested_device = device
        self.device: Optional[str] = None
        self.max_new_tokens = max_new_tokens
        self.temperature = temperature
        self.top_p = top_p

        self.model = None
        self.tokenizer = None
        self.speech_session: Optional[onnxruntime.InferenceSession] = None
        self.language_handle: Optional[ModelHandle] = None
        self.speech_handle: Optional[ModelHandle] = None

        self._registered: Dict[str, ModelHandle] = {}
        self._initialized = False

    def initialize(self) -> bool:
        """Pick the compute device. The backend stays unavailable if this fails."""
        if self._initialized:
            return True

        try:
            if self.requested_device == "cuda" or (
                self.requested_device == "auto" and torch.cuda.is_available()
            ):
                if not torch.cuda.is_available():
                    raise BackendUnavailableError("CUDA requested but not available")
                self.device = "cuda"
                gpu_name = torch.cuda.get_device_name(0)
                gpu_memory = torch.cuda.get_device_properties(0).total_memory / (1024**3)
                logger.info(f"GPU detected: {gpu_name} ({gpu_memory:.1f}GB)")
            else:
                self.device = "cpu"

            providers = onnxruntime.get_available_providers()
            logger.info(f"Inference backend initialized on {self.device}, ONNX providers: {providers}")
            self._initialized = True
        except Exception as e:
            logger.error(f"Failed to initialize inference backend: {e}")
            self._initialized = False

        return self._initialized

    def is_available(self) -> bool:
        return self._initialized

    async def register_model(
        self,
        model_id: str,
        name: str,
        source_uri: str,
        framework: InferenceFramework,
        modality: ModelCategory,
    ) -> ModelHandle:
        """Declare a local model file so it can be loaded."""
        local_path = path_from_uri(source_uri)
        if local_path is None:
            raise RegistrationFailedError(f"Unsupported model source: {source_uri}")
        if not os.path.isfile(local_path):
            raise RegistrationFailedError(f"Model file not found: {local_path}")

        handle = ModelHandle(
            model_id=model_id,
            name=name,
            source_uri=source_uri,
            framework=framework,
            modality=modality,
            local_path=local_path,
        )
        # One registration per modality; a newer one supersedes the rest
        self._registered = {
            key: registered for key, registered in self._registered.items()
            if registered.modality != modality
        }
        self._registered[model_id] = handle
        logger.info(f"Registered {modality.value} model {model_id} from {local_path}")
        return handle

    async def load_model(self, handle: ModelHandle) -> None:
        """Load a registered model into the slot for its modality."""
        self._require_available()
        if handle.model_id not in self._registered:
            raise LoadFailedError(f"Model {handle.model_id} is not registered")

        try:
            if handle.modality == ModelCategory.LANGUAGE:
                await self.unload_model(ModelCategory.LANGUAGE)
                await asyncio.to_thread(self._load_language_model, handle)
                self.language_handle = handle
            else:
                session = await asyncio.to_thread(self._load_speech_model, handle)
                self.speech_session = session
                self.speech_handle = handle
        except LoadFailedError:
            raise
        except Exception as e:
            logger.error(f"Failed to load model {handle.model_id}: {e}")
            raise LoadFailedError(str(e)) from e

        logger.info(f"Successfully loaded {handle.modality.value} model: {handle.model_id}")

    def _load_language_model(self, handle: ModelHandle) -> None:
        """Load tokenizer and weights from a GGUF file. Runs in a worker thread."""
        if handle.framework != InferenceFramework.LLAMA_CPP:
            raise LoadFailedError(f"Unsupported language framework: {handle.framework.value}")

        model_dir, gguf_file = os.path.split(handle.local_path)
        self.tokenizer = AutoTokenizer.from_pretrained(model_dir, gguf_file=gguf_file)
        self.model = AutoModelForCausalLM.from_pretrained(
            model_dir,
            gguf_file=gguf_file,
            torch_dtype=torch.float16 if self.device == "cuda" else torch.float32,
        )
        self.model.to(self.device)
        self.model.eval()

        if self.tokenizer.pad_token is None:
            self.tokenizer.pad_token = self.tokenizer.eos_token

    def _load_speech_model(self, handle: ModelHandle) -> onnxruntime.InferenceSession:
        if handle.framework != InferenceFramework.ONNX:
            raise LoadFailedError(f"Unsupported speech framework: {handle.framework.value}")

        providers = ["CPUExecutionProvider"]
        if self.device == "cuda" and "CUDAExecutionProvider" in onnxruntime.get_available_providers():
            providers.insert(0, "CUDAExecutionProvider")
        return onnxruntime.InferenceSession(handle.local_path, providers=providers)

    async def unload_model(self, category: ModelCategory) -> None:
        """Release the model held in a category's slot."""
        if category == ModelCategory.LANGUAGE:
            if self.model is None:
                return
            model_id = self.language_handle.model_id if self.language_handle else "unknown"
            self.model = None
            self.tokenizer = None
            self.language_handle = None
            if torch.cuda.is_available():
                torch.cuda.empty_cache()
            logger.info(f"Unloaded model: {model_id}")
        else:
            self.speech_session = None
            self.speech_handle = None

    async def generate_stream(self, prompt: str) -> AsyncGenerator[str, None]:
        """Stream decoded text fragments for prompt, one sampled token at a time."""
        self._require_available()
        if self.model is None or self.tokenizer is None:
            raise GenerationFailedError("No language model loaded")

        inputs = self.tokenizer(self._format_prompt(prompt), return_tensors="pt")
        current_input_ids = inputs["input_ids"].to(self.device)
        stop_ids = {self.tokenizer.eos_token_id, self.tokenizer.pad_token_id}

        generated_tokens = 0
        while generated_tokens < self.max_new_tokens:
            try:
                next_token = await asyncio.to_thread(self._next_token, current_input_ids)
            except Exception as e:
                raise GenerationFailedError(f"token {generated_tokens}: {e}") from e

            token_id = next_token.item()
            if token_id in stop_ids:
                logger.debug(f"Stop token detected (id: {token_id})")
                break

            token_text = self.tokenizer.decode([token_id], skip_special_tokens=True)
            if token_text:
                yield token_text

            current_input_ids = torch.cat([current_input_ids, next_token.view(1, 1)], dim=1)
            generated_tokens += 1

        logger.debug(f"Generated {generated_tokens} tokens")

    def _next_token(self, input_ids: torch.Tensor) -> torch.Tensor:
        """Sample the next token id. Runs in a worker thread."""
        with torch.no_grad():
            logits = self.model(input_ids=input_ids).logits[0, -1, :]

        if self.temperature <= 0:
            return torch.argmax(logits, dim=-1, keepdim=True)

        logits = logits / self.temperature

        # Nucleus sampling: keep the smallest set of tokens whose mass exceeds top_p
        if self.top_p < 1.0:
            sorted_logits, sorted_indices = torch.sort(logits, descending=True)
            cumulative_probs = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)
            sorted_indices_to_remove = cumulative_probs > self.top_p
            sorted_indices_to_remove[1:] = sorted_indices_to_remove[:-1].clone()
            sorted_indices_to_remove[0] = False
            logits[sorted_indices[sorted_indices_to_remove]] = -float("inf")

        probs = torch.softmax(logits, dim=-1)
        return torch.multinomial(probs, num_samples=1)

    def _format_prompt(self, prompt: str) -> str:
        if getattr(self.tokenizer, "chat_template", None):
            return self.tokenizer.apply_chat_template(
                [{"role": "user", "content": prompt.strip()}],
                tokenize=False,
                add_generation_prompt=True,
            )
        return f"User: {prompt.strip()}\n\nAssistant: "

    def _require_available(self) -> None:
        if not self._initialized:
            raise BackendUnavailableError()
