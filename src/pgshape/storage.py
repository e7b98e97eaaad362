"""Array storage backends and checkpoint files."""

from __future__ import annotations

import os
import pickle
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import torch

from pgshape.state import ModelState, ShapeModelConfig, SubjectState
from pgshape.utils import logger

CHECKPOINT_VERSION = 1


class CheckpointError(RuntimeError):
    """A checkpoint file cannot be read or misses required entries."""


@runtime_checkable
class ArrayStore(Protocol):
    """Key-value storage of arrays. A load returns the latest save."""

    def load(self, key: str) -> torch.Tensor: ...

    def save(self, key: str, array: torch.Tensor) -> None: ...

    def exists(self, key: str) -> bool: ...


class MemoryStore:
    """Arrays kept in a dictionary."""

    def __init__(self, arrays: dict[str, torch.Tensor] | None = None):
        self._arrays: dict[str, torch.Tensor] = dict(arrays or {})
        self._lock = threading.Lock()

    def load(self, key: str) -> torch.Tensor:
        try:
            return self._arrays[key]
        except KeyError:
            raise KeyError(f"No array stored under {key!r}") from None

    def save(self, key: str, array: torch.Tensor) -> None:
        with self._lock:
            self._arrays[key] = array

    def exists(self, key: str) -> bool:
        return key in self._arrays

    def keys(self) -> list[str]:
        return list(self._arrays)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "memory", "arrays": dict(self._arrays)}


class DiskStore:
    """Arrays saved as individual ``.pt`` files in a directory.

    Writes go to a temporary file that is then renamed, so that a load never
    sees a partially written array.
    """

    def __init__(self, directory: str | os.PathLike):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.pt"

    def load(self, key: str) -> torch.Tensor:
        path = self._path(key)
        if not path.exists():
            raise KeyError(f"No array stored under {key!r} in {self.directory}")
        return torch.load(path, weights_only=True)

    def save(self, key: str, array: torch.Tensor) -> None:
        path = self._path(key)
        tmp = path.with_suffix(f".tmp{threading.get_ident()}")
        torch.save(array.detach().cpu(), tmp)
        os.replace(tmp, path)

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "disk", "directory": str(self.directory)}


def store_from_dict(state: dict[str, Any]) -> MemoryStore | DiskStore:
    if state["kind"] == "memory":
        return MemoryStore(state["arrays"])
    if state["kind"] == "disk":
        return DiskStore(state["directory"])
    raise CheckpointError(f"Unknown store kind {state['kind']!r}")


def save_checkpoint(
    path: str | os.PathLike,
    config: ShapeModelConfig,
    model: ModelState,
    subjects: list[SubjectState],
    store: MemoryStore | DiskStore,
) -> Path:
    """Write the configuration, model, subjects and image store to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "version": CHECKPOINT_VERSION,
        "config": config.to_options(),
        "model": model.to_dict(),
        "subjects": [subject.to_dict() for subject in subjects],
        "store": store.to_dict(),
    }
    tmp = path.with_name(path.name + ".tmp")
    torch.save(payload, tmp)
    os.replace(tmp, path)
    logger.debug(f"Checkpoint written to {path}")
    return path


def load_checkpoint(path: str | os.PathLike) -> dict[str, Any]:
    """Read a checkpoint written by :func:`save_checkpoint`.

    Returns
    -------
    checkpoint : dict
        With keys ``config`` (ShapeModelConfig), ``model`` (ModelState),
        ``subjects`` (list of SubjectState) and ``store``.

    Raises
    ------
    CheckpointError
        If the file cannot be read or misses entries.
    """
    path = Path(path)
    try:
        payload = torch.load(path, weights_only=True)
    except (OSError, RuntimeError, EOFError, pickle.UnpicklingError) as err:
        raise CheckpointError(f"Cannot read checkpoint {path}: {err}") from err
    if not isinstance(payload, dict):
        raise CheckpointError(f"Checkpoint {path} does not hold a dictionary")
    missing = {"version", "config", "model", "subjects", "store"} - set(payload)
    if missing:
        raise CheckpointError(f"Checkpoint {path} misses entries {sorted(missing)}")
    if payload["version"] != CHECKPOINT_VERSION:
        raise CheckpointError(
            f"Checkpoint {path} has version {payload['version']}, "
            f"expected {CHECKPOINT_VERSION}"
        )
    try:
        return {
            "config": ShapeModelConfig.from_options(payload["config"]),
            "model": ModelState.from_dict(payload["model"]),
            "subjects": [SubjectState.from_dict(s) for s in payload["subjects"]],
            "store": store_from_dict(payload["store"]),
        }
    except KeyError as err:
        raise CheckpointError(f"Checkpoint {path} misses entry {err}") from err


__all__ = [
    "CheckpointError",
    "ArrayStore",
    "MemoryStore",
    "DiskStore",
    "save_checkpoint",
    "load_checkpoint",
]
