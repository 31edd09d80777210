"""
Model Discovery

Shallow scan of well-known folders for language (GGUF) and speech (ONNX/Whisper) model files.
"""

import asyncio
import os
from dataclasses import replace
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from loguru import logger

from .descriptors import ModelCategory, ModelDescriptor, ModelFormat
from .errors import ScanPathUnreadableError

PathLike = Union[str, os.PathLike]

ANDROID_STORAGE_ROOT = "/storage/emulated/0"


def default_search_paths() -> List[str]:
    """Folders where users usually drop downloaded models."""
    home = Path.home()
    return [
        str(home / "Download"),
        str(home / "Downloads"),
        str(home / "Models"),
        str(home / "AI"),
        str(home),
        f"{ANDROID_STORAGE_ROOT}/Download",
        f"{ANDROID_STORAGE_ROOT}/Downloads",
        f"{ANDROID_STORAGE_ROOT}/Models",
    ]


def classify(path: Path) -> Optional[ModelDescriptor]:
    """Build a descriptor for a model file, or None if the file is not a model."""
    file_name = path.name.lower()

    if file_name.endswith(".gguf"):
        model_format, category = ModelFormat.GGUF, ModelCategory.LANGUAGE
    elif file_name.endswith(".onnx") or "whisper" in file_name:
        model_format, category = ModelFormat.ONNX, ModelCategory.SPEECH_RECOGNITION
    else:
        return None

    return ModelDescriptor(
        name=path.stem,
        path=str(path),
        format=model_format,
        category=category,
        size_bytes=path.stat().st_size,
    )


def _list_root(root: Path) -> List[Path]:
    """List the immediate children of a search root."""
    try:
        return sorted(root.iterdir(), key=lambda child: child.name)
    except OSError as e:
        raise ScanPathUnreadableError(f"{root}: {e}") from e


def scan(root_paths: Iterable[PathLike]) -> List[ModelDescriptor]:
    """Scan each root (non-recursively) and return descriptors unique by path."""
    discovered: List[ModelDescriptor] = []
    seen = set()

    for root_path in root_paths:
        root = Path(root_path)
        if not root.is_dir():
            logger.debug(f"Skipping missing search path: {root}")
            continue

        try:
            children = _list_root(root)
        except ScanPathUnreadableError as e:
            logger.warning(f"Failed to scan {root}: {e}")
            continue

        for child in children:
            try:
                if not child.is_file():
                    continue
                resolved = child.resolve()
                if resolved in seen:
                    continue
                descriptor = classify(child)
            except OSError as e:
                logger.warning(f"Failed to inspect {child}: {e}")
                continue

            if descriptor is None:
                continue
            seen.add(resolved)
            discovered.append(replace(descriptor, path=str(resolved)))

    logger.info(f"Discovered {len(discovered)} models")
    return discovered


class ModelDiscovery:
    """Runs discovery over a configured list of search roots."""

    def __init__(self, search_paths: Optional[Sequence[PathLike]] = None):
        if search_paths is None:
            search_paths = default_search_paths()
        self.search_paths: List[str] = [str(p) for p in search_paths]

    def scan(self, root_paths: Optional[Sequence[PathLike]] = None) -> List[ModelDescriptor]:
        """Scan the configured roots, or the given ones instead."""
        return scan(root_paths if root_paths is not None else self.search_paths)

    async def scan_async(self, root_paths: Optional[Sequence[PathLike]] = None) -> List[ModelDescriptor]:
        """Run the scan in a worker thread."""
        return await asyncio.to_thread(self.scan, root_paths)
