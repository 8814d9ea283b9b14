"""Append-only checkpoint journal of pipeline step transitions.

Each step writes a JSON line when it starts, completes or fails, so an
operator can see the last completed step after a failure. The journal is
never used to skip steps or to reuse geometry on a later run.

Example record:
    {"time": "2026-10-18T09:12:03+00:00", "run": "migrate-1a2b3c4d",
     "step": "rewrite_partition_table", "status": "completed",
     "device": "/dev/mmcblk0p3", "details": {"end_sector": 105908223}}
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from btrfs_migrate.logging import LoggerFactory

log = LoggerFactory.for_system()

STARTED = "started"
COMPLETED = "completed"
FAILED = "failed"


class CheckpointJournal:
    def __init__(self, path: Path, run_id: str, device: str = ""):
        self.path = Path(path)
        self.run_id = run_id
        self.device = device

    def record(self, step: str, status: str, **details: Any) -> None:
        entry = {
            "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "run": self.run_id,
            "step": step,
            "status": status,
            "device": self.device,
            "details": details,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str, sort_keys=True) + "\n")

    def entries(self) -> list[dict[str, Any]]:
        """Records of this run, oldest first. Unreadable lines are skipped."""
        if not self.path.exists():
            return []
        records = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                log.warning(f"Skipping unreadable checkpoint line in {self.path}")
                continue
            if isinstance(record, dict) and record.get("run") == self.run_id:
                records.append(record)
        return records

    def completed_steps(self) -> list[str]:
        return [entry["step"] for entry in self.entries() if entry.get("status") == COMPLETED]

    def last_completed(self) -> Optional[str]:
        steps = self.completed_steps()
        return steps[-1] if steps else None
