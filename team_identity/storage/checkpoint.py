import json
import os
import threading
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field

from team_identity.utils.misc_utils import country_key, utcnow


class CheckpointState(BaseModel):
    cycle_id: Optional[str] = None
    completed: List[str] = Field(default_factory=list)
    updated_at: Optional[str] = None


class SyncCheckpoint:
    """Remembers which partitions of the current cycle are already committed.

    Written after every completed partition so an interrupted ``sync_all``
    resumes with the countries it has not finished yet. ``path=None`` keeps
    the checkpoint in memory only.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self.state = self._read()

    def _read(self) -> CheckpointState:
        if self.path is None or not self.path.exists():
            return CheckpointState()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return CheckpointState.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            # A corrupt checkpoint only costs a re-run of finished partitions
            logger.warning(f"Ignoring unreadable sync checkpoint {self.path}: {e}")
            return CheckpointState()

    def _write(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self.state.model_dump(), f, indent=2)
        os.replace(tmp_path, self.path)

    def is_completed(self, cycle_id: str, country: str) -> bool:
        with self._lock:
            return self.state.cycle_id == cycle_id and country_key(country) in self.state.completed

    def mark_completed(self, cycle_id: str, country: str) -> None:
        with self._lock:
            if self.state.cycle_id != cycle_id:
                # New cycle: earlier progress no longer counts
                self.state = CheckpointState(cycle_id=cycle_id)
            key = country_key(country)
            if key and key not in self.state.completed:
                self.state.completed.append(key)
            self.state.updated_at = utcnow().isoformat()
            self._write()

    def completed(self, cycle_id: str) -> List[str]:
        with self._lock:
            return list(self.state.completed) if self.state.cycle_id == cycle_id else []

    def reset(self) -> None:
        with self._lock:
            self.state = CheckpointState()
            self._write()
        logger.info("Sync checkpoint reset.")
