"""
Action Log
==========

Append-only JSON-lines log of guard decisions, one file per UTC day:

    <log_dir>/guard-YYYY-MM-DD.log

Each line: {"timestamp", "level", "command", "result", "approved"}.
A record is written with a single write() on a file opened in append mode.
"""

import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional, Union


logger = logging.getLogger(__name__)

MAX_RESULT_LENGTH = 500


class ActionLog:
    """Daily JSONL files of guarded commands."""

    def __init__(self, log_dir: Union[str, Path]):
        self.log_dir = Path(log_dir)

    def path_for(self, day: Optional[date] = None) -> Path:
        day = day or datetime.now(timezone.utc).date()
        return self.log_dir / f"guard-{day.isoformat()}.log"

    def record(self, level: str, command: str, result: str, approved: bool) -> dict:
        """Append one entry and return it."""
        now = datetime.now(timezone.utc)
        entry = {
            "timestamp": now.isoformat(),
            "level": level,
            "command": command,
            "result": (result or "")[:MAX_RESULT_LENGTH],
            "approved": approved,
        }
        line = json.dumps(entry, ensure_ascii=False) + "\n"

        self.log_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path_for(now.date()), "a", encoding="utf-8") as f:
            f.write(line)
        return entry

    def read(self, day: Optional[date] = None) -> list[dict]:
        """All entries for a day (today by default)."""
        path = self.path_for(day)
        if not path.exists():
            return []

        entries = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed line %d in %s", lineno, path)
        return entries
