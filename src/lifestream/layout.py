"""
layout.py — lifestream directory layout

A life directory holds two kinds of log roots:

  events/                  primary log, one YYYY-MM.jsonl file per month
  synced/<service>/        one directory per external service, same convention

The root resolves from an explicit path, then the LIFE_DIR environment
variable, then the current working directory.
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import InvalidServiceNameError

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

LIFE_DIR_ENV = "LIFE_DIR"
EVENTS_DIRNAME = "events"
SYNCED_DIRNAME = "synced"
LOG_SUFFIX = ".jsonl"


@dataclass(frozen=True)
class StreamLayout:
    """Resolved directory structure rooted at a life directory."""
    root: Path

    @property
    def events_dir(self) -> Path:
        return self.root / EVENTS_DIRNAME

    @property
    def synced_dir(self) -> Path:
        return self.root / SYNCED_DIRNAME

    def service_dir(self, service: str) -> Path:
        """Directory holding the merged records of one external service."""
        return self.synced_dir / validate_service_name(service)

    def services(self) -> List[str]:
        """Names of all services that have a synced directory, sorted."""
        if not self.synced_dir.is_dir():
            return []
        return sorted(p.name for p in self.synced_dir.iterdir() if p.is_dir())

    def read_roots(self) -> List[Path]:
        """Every directory the log reader scans: primary log first, then services."""
        return [self.events_dir] + [self.synced_dir / name for name in self.services()]


def validate_service_name(service: str) -> str:
    name = str(service or "").strip()
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise InvalidServiceNameError(f"service={service!r}")
    return name


def resolve_layout(root: Optional[str | Path] = None) -> StreamLayout:
    """Resolve the life directory.

    Args:
        root: Explicit life directory. Overrides the environment.

    Returns:
        StreamLayout: Layout bound to the resolved absolute path.
    """
    if root is None:
        env_root = os.environ.get(LIFE_DIR_ENV, "").strip()
        root = env_root or os.getcwd()
    return StreamLayout(Path(root).expanduser().resolve())
