"""Persistence helpers for optimization runs."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def _sanitize(obj: Any) -> Any:
    """Convert objects to JSON-serialisable primitives."""
    if isinstance(obj, dict):
        return {str(k): _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize(x) for x in obj]
    if isinstance(obj, pd.Timestamp):
        return obj.isoformat()
    if isinstance(obj, (np.floating, np.integer)):
        obj = float(obj)
    if isinstance(obj, float) and not math.isfinite(obj):
        # JSON has no infinities; keep them readable.
        return str(obj)
    if isinstance(obj, np.ndarray):
        return [_sanitize(x) for x in obj.tolist()]
    if hasattr(obj, 'to_dict'):
        return _sanitize(obj.to_dict())
    if isinstance(obj, (float, int, str, bool)) or obj is None:
        return obj
    return str(obj)


class RunStore:
    """JSONL solution log plus config and checkpoint snapshots for one run."""

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = Path(run_dir)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.solutions_path = self.run_dir / 'solutions.jsonl'
        self.checkpoint_path = self.run_dir / 'checkpoint.json'
        self.config_path = self.run_dir / 'config.json'
        self.result_path = self.run_dir / 'result.json'

    def _write_json(self, path: Path, payload: Any) -> None:
        tmp_path = path.with_suffix('.tmp')
        tmp_path.write_text(json.dumps(_sanitize(payload), indent=2))
        tmp_path.replace(path)

    # ---------------------------- configuration
    def write_config(self, config: Dict[str, Any]) -> None:
        self._write_json(self.config_path, config)

    def load_config(self) -> Optional[Dict[str, Any]]:
        if not self.config_path.exists():
            return None
        return json.loads(self.config_path.read_text())

    # ---------------------------- solution records
    def append_solution(self, record: Any) -> None:
        line = json.dumps(_sanitize(record), separators=(',', ':'))
        with self.solutions_path.open('a', encoding='utf-8') as handle:
            handle.write(line + '\n')

    def load_solutions(self) -> List[Dict[str, Any]]:
        if not self.solutions_path.exists():
            return []
        records: List[Dict[str, Any]] = []
        with self.solutions_path.open('r', encoding='utf-8') as handle:
            for number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt line %d in %s", number, self.solutions_path)
        return records

    # ---------------------------- checkpoints
    def write_checkpoint(self, checkpoint: Dict[str, Any]) -> None:
        self._write_json(self.checkpoint_path, checkpoint)

    def load_checkpoint(self) -> Optional[Dict[str, Any]]:
        if not self.checkpoint_path.exists():
            return None
        try:
            return json.loads(self.checkpoint_path.read_text())
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable checkpoint %s", self.checkpoint_path)
            return None

    def write_result(self, result: Dict[str, Any]) -> None:
        self._write_json(self.result_path, result)
