"""
Append-only side-channel logs.

Per group:
    notfound-{group}.txt  - probe says the file exists but nothing resolved it
    unmapped-{group}.txt  - an entity rule matched but no entity row was found

Entries are host+path strings, appended as they occur and de-duplicated in
place once the group run has finished.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


class SideChannelLog:
    def __init__(self, path: Path):
        self.path = Path(path)

    def append(self, entries: Iterable[str]) -> int:
        lines = [e.strip() for e in entries if e and e.strip()]
        if not lines:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
        return len(lines)

    def dedupe(self) -> int:
        """Rewrite the log sorted and unique. Returns the remaining entry count."""
        if not self.path.exists():
            return 0

        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            unique = sorted({line.strip() for line in f if line.strip()})

        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            if unique:
                f.write("\n".join(unique) + "\n")
        os.replace(tmp_path, self.path)

        logger.debug(
            "De-duplicated side-channel log %s",
            self.path.name,
            extra={"local_path": str(self.path), "lines_out": len(unique)},
        )
        return len(unique)


@dataclass
class SideChannelLogs:
    notfound: SideChannelLog
    unmapped: SideChannelLog

    @classmethod
    def for_group(cls, directory: Path, group: str) -> "SideChannelLogs":
        directory = Path(directory)
        return cls(
            notfound=SideChannelLog(directory / f"notfound-{group}.txt"),
            unmapped=SideChannelLog(directory / f"unmapped-{group}.txt"),
        )

    def dedupe_all(self) -> None:
        self.notfound.dedupe()
        self.unmapped.dedupe()
