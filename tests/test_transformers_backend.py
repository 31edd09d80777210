"""
Tests for the transformers/onnxruntime backend, with model weights replaced by stubs.
"""

from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

torch = pytest.importorskip("torch")
pytest.importorskip("transformers")
pytest.importorskip("onnxruntime")

from hetu.backend import ModelHandle
from hetu.descriptors import InferenceFramework, ModelCategory
from hetu.errors import BackendUnavailableError, GenerationFailedError, LoadFailedError, RegistrationFailedError
from hetu.transformers_backend import TransformersBackend

VOCAB = {3: "Hel", 4: "lo", 5: "!"}
EOS = 0


class ScriptedModel:
    """Causal LM stub whose greedy choice follows a fixed token script."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    def __call__(self, input_ids):
        logits = torch.zeros(1, input_ids.shape[1], 8)
        logits[0, -1, self.script[self.calls]] = 10.0
        self.calls += 1
        return SimpleNamespace(logits=logits)


def _tokenizer():
    tokenizer = Mock()
    tokenizer.return_value = {"input_ids": torch.tensor([[1, 2]])}
    tokenizer.eos_token_id = EOS
    tokenizer.pad_token_id = EOS
    tokenizer.chat_template = None
    tokenizer.decode.side_effect = lambda ids, skip_special_tokens=True: VOCAB.get(ids[0], "")
    return tokenizer


@pytest.fixture
def backend():
    backend = TransformersBackend(device="cpu", max_new_tokens=10, temperature=0.0)
    assert backend.initialize() is True
    return backend


def test_starts_unavailable_until_initialized():
    backend = TransformersBackend(device="cpu")

    assert backend.is_available() is False
    backend.initialize()
    assert backend.is_available() is True


def test_cuda_request_without_gpu_stays_unavailable():
    with patch("torch.cuda.is_available", return_value=False):
        backend = TransformersBackend(device="cuda")

        assert backend.initialize() is False
        assert backend.is_available() is False


@pytest.mark.asyncio
async def test_register_requires_existing_local_file(backend, model_dir):
    with pytest.raises(RegistrationFailedError):
        await backend.register_model("m", "m", "https://example.com/m.gguf",
                                     InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE)
    with pytest.raises(RegistrationFailedError):
        await backend.register_model("m", "m", f"file://{model_dir}/missing.gguf",
                                     InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE)

    handle = await backend.register_model("a", "a", f"file://{model_dir}/a.gguf",
                                          InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE)
    assert handle.local_path == str(model_dir / "a.gguf")


@pytest.mark.asyncio
async def test_load_requires_initialized_backend(model_dir):
    backend = TransformersBackend(device="cpu")
    handle = ModelHandle("a", "a", f"file://{model_dir}/a.gguf",
                         InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE, str(model_dir / "a.gguf"))

    with pytest.raises(BackendUnavailableError):
        await backend.load_model(handle)


@pytest.mark.asyncio
async def test_load_of_unregistered_model_fails(backend, model_dir):
    handle = ModelHandle("a", "a", f"file://{model_dir}/a.gguf",
                         InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE, str(model_dir / "a.gguf"))

    with pytest.raises(LoadFailedError):
        await backend.load_model(handle)


@pytest.mark.asyncio
async def test_invalid_onnx_file_raises_load_failed(backend, model_dir):
    handle = await backend.register_model("x", "x", f"file://{model_dir}/x.onnx",
                                          InferenceFramework.ONNX, ModelCategory.SPEECH_RECOGNITION)

    with pytest.raises(LoadFailedError):
        await backend.load_model(handle)
    assert backend.speech_session is None


@pytest.mark.asyncio
async def test_language_load_uses_gguf_file(backend, model_dir):
    handle = await backend.register_model("a", "a", f"file://{model_dir}/a.gguf",
                                          InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE)

    with patch("hetu.transformers_backend.AutoTokenizer") as tokenizer_cls, \
            patch("hetu.transformers_backend.AutoModelForCausalLM") as model_cls:
        tokenizer_cls.from_pretrained.return_value.pad_token = None
        await backend.load_model(handle)

    tokenizer_cls.from_pretrained.assert_called_once_with(str(model_dir), gguf_file="a.gguf")
    assert model_cls.from_pretrained.call_args.kwargs["gguf_file"] == "a.gguf"
    assert backend.language_handle is handle
    assert backend.tokenizer.pad_token == backend.tokenizer.eos_token


@pytest.mark.asyncio
async def test_generate_stream_yields_until_eos(backend):
    backend.model = ScriptedModel([3, 4, 5, EOS])
    backend.tokenizer = _tokenizer()

    fragments = [f async for f in backend.generate_stream("hi")]

    assert fragments == ["Hel", "lo", "!"]


@pytest.mark.asyncio
async def test_generate_stream_respects_token_limit(backend):
    backend.max_new_tokens = 2
    backend.model = ScriptedModel([3, 4, 5, EOS])
    backend.tokenizer = _tokenizer()

    fragments = [f async for f in backend.generate_stream("hi")]

    assert fragments == ["Hel", "lo"]


@pytest.mark.asyncio
async def test_generate_stream_without_model_fails(backend):
    with pytest.raises(GenerationFailedError):
        async for _ in backend.generate_stream("hi"):
            pass


@pytest.mark.asyncio
async def test_unload_language_model_releases_weights(backend):
    backend.model = ScriptedModel([EOS])
    backend.tokenizer = _tokenizer()

    await backend.unload_model(ModelCategory.LANGUAGE)

    assert backend.model is None
    assert backend.tokenizer is None


@pytest.mark.asyncio
async def test_new_registration_supersedes_same_modality(backend, model_dir):
    speech = await backend.register_model("x", "x", f"file://{model_dir}/x.onnx",
                                          InferenceFramework.ONNX, ModelCategory.SPEECH_RECOGNITION)
    await backend.register_model("a", "a", f"file://{model_dir}/a.gguf",
                                 InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE)
    latest = await backend.register_model("b", "B", f"file://{model_dir}/B.GGUF",
                                          InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE)

    assert backend._registered == {"x": speech, "b": latest}
    with pytest.raises(LoadFailedError):
        await backend.load_model(ModelHandle("a", "a", f"file://{model_dir}/a.gguf",
                                             InferenceFramework.LLAMA_CPP, ModelCategory.LANGUAGE,
                                             str(model_dir / "a.gguf")))
