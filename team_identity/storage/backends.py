# team_identity/storage/backends.py
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from team_identity.utils.misc_utils import utcnow

DOCUMENT_VERSION = 1


class MappingBackend(ABC):
    """Durable home of the mapping document: loaded whole, saved whole."""

    @abstractmethod
    async def load(self) -> List[Dict[str, Any]]:
        """Returns every persisted mapping as a plain dict."""
        pass

    @abstractmethod
    async def save(self, mappings: List[Dict[str, Any]]) -> None:
        """Replaces the persisted document with ``mappings``."""
        pass


class MemoryBackend(MappingBackend):
    """Keeps the document in memory. Used by tests and dry runs."""

    def __init__(self, mappings: Optional[List[Dict[str, Any]]] = None):
        self.mappings: List[Dict[str, Any]] = list(mappings or [])
        self.saves = 0

    async def load(self) -> List[Dict[str, Any]]:
        return [dict(m) for m in self.mappings]

    async def save(self, mappings: List[Dict[str, Any]]) -> None:
        self.mappings = [dict(m) for m in mappings]
        self.saves += 1


class JsonFileBackend(MappingBackend):
    """Flat JSON document on disk, replaced atomically on every save."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    async def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            logger.info(f"No mapping document at {self.path}; starting empty.")
            return []

        with open(self.path, "r", encoding="utf-8") as f:
            document = json.load(f)

        # A bare array is accepted as well as the versioned envelope
        if isinstance(document, list):
            mappings = document
        elif isinstance(document, dict):
            mappings = document.get("mappings", [])
        else:
            raise ValueError(f"Unexpected mapping document shape in {self.path}")

        logger.info(f"Loaded {len(mappings)} mappings from {self.path}")
        return mappings

    async def save(self, mappings: List[Dict[str, Any]]) -> None:
        document = {
            "version": DOCUMENT_VERSION,
            "saved_at": utcnow().isoformat(),
            "mappings": mappings,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write next to the target so os.replace stays on one filesystem
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Saved {len(mappings)} mappings to {self.path}")
