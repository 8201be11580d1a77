"""
State Storage
A single JSON document per installation: history snapshot plus settings.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

STATE_FILE = "state.json"


class StateStorage:
    """Reads and atomically writes the state document."""

    def __init__(self, data_dir: Optional[Path] = None, filename: str = STATE_FILE):
        if data_dir is None:
            data_dir = Path("data")
        self.data_dir = Path(data_dir)
        self.file = self.data_dir / filename

    def load(self) -> Dict[str, Any]:
        """Return the stored document, or ``{}`` if it is missing or corrupt."""
        if not self.file.exists():
            logger.info(f"No state file at {self.file}, starting fresh")
            return {}
        try:
            with open(self.file, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {self.file} ({type(e).__name__}: {e}), starting fresh")
            return {}
        if not isinstance(document, dict):
            logger.warning(f"State file {self.file} is not a JSON object, starting fresh")
            return {}
        return document

    def save(self, document: Dict[str, Any]):
        """
        Write the document via a temp file and ``os.replace`` so a crash
        mid-write never leaves a truncated state file. Raises OSError.
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=self.data_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document, f, separators=(",", ":"))
            os.replace(tmp_path, self.file)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
