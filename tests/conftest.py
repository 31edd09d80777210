"""
Pytest configuration and fixtures for Hetu tests.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, List, Optional
from unittest.mock import patch

import pytest

from hetu.backend import ModelHandle
from hetu.descriptors import ModelCategory
from hetu.discovery import ModelDiscovery, classify
from hetu.session import SessionManager


MODEL_FILES = {
    "a.gguf": 2048,
    "B.GGUF": 4096,
    "x.onnx": 1024,
    "whisper-base.bin": 512,
    "notes.txt": 16,
}


class FakeBackend:
    """Scripted inference backend that records every call."""

    def __init__(
        self,
        available: bool = True,
        fragments: Optional[List[str]] = None,
        register_error: Optional[Exception] = None,
        load_error: Optional[Exception] = None,
        unload_error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        fail_after: int = 0,
    ):
        self.available = available
        self.fragments = fragments if fragments is not None else ["Hel", "lo", "!"]
        self.register_error = register_error
        self.load_error = load_error
        self.unload_error = unload_error
        self.stream_error = stream_error
        self.fail_after = fail_after

        self.registered: List[dict] = []
        self.loaded: List[ModelHandle] = []
        self.unloaded: List[ModelCategory] = []
        self.prompts: List[str] = []
        self.load_gate: Optional[asyncio.Event] = None
        self.between_fragments: Optional[Callable[[], Awaitable]] = None

    def is_available(self) -> bool:
        return self.available

    async def register_model(self, model_id, name, source_uri, framework, modality):
        self.registered.append({
            "model_id": model_id,
            "name": name,
            "source_uri": source_uri,
            "framework": framework,
            "modality": modality,
        })
        if self.register_error:
            raise self.register_error
        return ModelHandle(
            model_id=model_id,
            name=name,
            source_uri=source_uri,
            framework=framework,
            modality=modality,
        )

    async def load_model(self, handle):
        if self.load_gate is not None:
            await self.load_gate.wait()
        if self.load_error:
            raise self.load_error
        self.loaded.append(handle)

    async def unload_model(self, category):
        self.unloaded.append(category)
        if self.unload_error:
            raise self.unload_error

    async def generate_stream(self, prompt):
        self.prompts.append(prompt)
        for index, fragment in enumerate(self.fragments):
            if self.stream_error and index == self.fail_after:
                raise self.stream_error
            await asyncio.sleep(0)
            if self.between_fragments is not None and index > 0:
                await self.between_fragments()
            yield fragment
        if self.stream_error and self.fail_after >= len(self.fragments):
            raise self.stream_error


@pytest.fixture
def model_dir(tmp_path) -> Path:
    """A folder holding the standard mix of model and non-model files."""
    root = tmp_path / "Download"
    root.mkdir()
    for file_name, size in MODEL_FILES.items():
        (root / file_name).write_bytes(b"\0" * size)
    return root.resolve()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def session(fake_backend, model_dir):
    """Session manager over the fake backend, discovering from model_dir."""
    return SessionManager(fake_backend, discovery=ModelDiscovery([str(model_dir)]))


@pytest.fixture
def language_descriptor(model_dir):
    return classify(model_dir / "a.gguf")


@pytest.fixture
def speech_descriptor(model_dir):
    return classify(model_dir / "x.onnx")


@pytest.fixture
def test_client(fake_backend, model_dir, monkeypatch):
    """TestClient whose app builds its session over the fake backend."""
    from fastapi.testclient import TestClient
    from service.main import app

    monkeypatch.setenv("HETU_LOG_LEVEL", "WARNING")

    def build(settings):
        return SessionManager(fake_backend, discovery=ModelDiscovery([str(model_dir)]))

    with patch("service.main.build_session_manager", side_effect=build):
        with TestClient(app) as client:
            yield client

