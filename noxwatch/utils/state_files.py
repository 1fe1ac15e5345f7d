#!/usr/bin/env python3
"""
Noxwatch State Files

Small persistence helpers for the agent's on-disk records:
- snapshot files that are overwritten in place every cycle
- an append-only JSON-lines log rotated after a fixed number of entries
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger('noxwatch.state')


def write_json_atomic(path: Path, data: Any):
    """Overwrite a JSON file in place via a temp file and rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + '.tmp')
    with open(tmp_path, 'w') as f:
        json.dump(data, f, indent=2, default=str)
        f.write('\n')
    os.replace(tmp_path, path)


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file, returning None if missing or unreadable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read {path}: {e}")
        return None


class JsonLinesLog:
    """
    Append-only JSON-lines log with count-based rotation.

    Entries are never rewritten. Once the live file holds max_entries lines
    it is renamed to '<name>.1' (replacing the previous backup) and a fresh
    file is started, so at most 2 * max_entries records are kept on disk.
    """

    def __init__(self, path: Path, max_entries: int = 1000):
        self.path = Path(path)
        self.max_entries = max(1, max_entries)
        self._lock = threading.Lock()
        self._count = self._count_existing()

    def _count_existing(self) -> int:
        if not self.path.exists():
            return 0
        try:
            with open(self.path, 'r', encoding='utf-8', errors='replace') as f:
                return sum(1 for line in f if line.strip())
        except OSError as e:
            logger.warning(f"Failed to read {self.path}: {e}")
            return 0

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + '.1')

    def append(self, entry: Dict[str, Any]):
        line = json.dumps(entry, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self._count >= self.max_entries:
                # The live file may have been removed by an operator or logrotate
                if self.path.exists():
                    os.replace(self.path, self.backup_path)
                    logger.info(f"Rotated {self.path.name} -> {self.backup_path.name}")
                self._count = 0
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(line + '\n')
            self._count += 1

    def tail(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return the most recent entries, oldest first."""
        entries: List[Dict[str, Any]] = []
        with self._lock:
            for source in (self.backup_path, self.path):
                if not source.exists():
                    continue
                with open(source, 'r', encoding='utf-8', errors='replace') as f:
                    for line in f:
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            entries.append(json.loads(line))
                        except ValueError:
                            continue
        return entries[-limit:] if limit else entries

    def __len__(self) -> int:
        return self._count
