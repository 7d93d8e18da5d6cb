"""
Runtime configuration overlay

The metadata server reads its personality and upstream master from a
runtime copy of the base configuration. The overlay owns two keys,
``PERSONALITY`` and ``MASTER_HOST``; every other line of the base file is
carried over untouched. Rewrites go to a temporary file that replaces the
overlay atomically, under an instance mutex and an advisory file lock, both
with a bounded wait.
"""

import asyncio
import fcntl
import logging
import os
import shutil
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..cluster.schemas import Personality
from ..core.errors import ConfigError, LockTimeoutError

logger = logging.getLogger(__name__)

MANAGED_KEYS = ("PERSONALITY", "MASTER_HOST")

# Upstream used while the real master is unknown; never resolves.
NO_MASTER_HOST = "master.invalid"


@dataclass(frozen=True)
class OverlaySettings:
    """Values of the keys managed by the overlay"""
    personality: Optional[Personality] = None
    master_host: Optional[str] = None


def _line_key(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    return stripped.split("=", 1)[0].strip().upper()


def _line_value(line: str) -> str:
    return line.split("=", 1)[1].strip()


class ConfigOverlay:
    """Configuration overlay of one metadata server instance"""

    def __init__(self, path: Path, base_path: Path, lock_timeout: float = 10.0,
                 user: Optional[str] = None, group: Optional[str] = None,
                 poll_interval: float = 0.1):
        self.path = Path(path)
        self.base_path = Path(base_path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self.user = user
        self.group = group
        self.poll_interval = poll_interval
        self._mutex = threading.Lock()

    def read(self) -> OverlaySettings:
        source = self.path if self.path.exists() else self.base_path
        return self._settings(self._read_lines(source))

    def apply(self, personality: Optional[Personality] = None, master_host: Optional[str] = None,
              rebase: bool = False) -> OverlaySettings:
        """Set managed keys; ``None`` keeps the current value.

        ``rebase`` rebuilds the overlay from the current base configuration,
        keeping the managed values already in the overlay.
        """
        with self._locked():
            existing = self.path.exists()
            current = self._read_lines(self.path) if existing else self._read_lines(self.base_path)
            settings = self._settings(current)
            if rebase and existing:
                current = self._read_lines(self.base_path)
            if not existing:
                logger.info(f"Materializing configuration overlay {self.path} from {self.base_path}")

            settings = OverlaySettings(
                personality=personality if personality is not None else settings.personality,
                master_host=master_host if master_host is not None else settings.master_host,
            )
            self._write(self._render(current, settings))
            logger.info(
                f"Overlay {self.path} updated: personality={settings.personality.value if settings.personality else 'unset'}"
                f" master_host={settings.master_host or 'unset'}"
            )
            return settings

    async def apply_async(self, personality: Optional[Personality] = None,
                          master_host: Optional[str] = None, rebase: bool = False) -> OverlaySettings:
        """``apply`` on a worker thread so a lock wait does not stall the event loop"""
        return await asyncio.to_thread(self.apply, personality, master_host, rebase)

    def _read_lines(self, path: Path) -> List[str]:
        try:
            return path.read_text().splitlines(keepends=True)
        except OSError as e:
            raise ConfigError(f"cannot read {path}: {e}") from e

    def _settings(self, lines: List[str]) -> OverlaySettings:
        values: Dict[str, str] = {}
        for line in lines:
            key = _line_key(line)
            if key in MANAGED_KEYS:
                values[key] = _line_value(line)

        personality = None
        raw = values.get("PERSONALITY", "").lower()
        if raw in (p.value for p in Personality):
            personality = Personality(raw)
        return OverlaySettings(personality=personality, master_host=values.get("MASTER_HOST") or None)

    def _render(self, lines: List[str], settings: OverlaySettings) -> str:
        # Keys without a value are left as the base file has them
        replaced = set()
        if settings.personality is not None:
            replaced.add("PERSONALITY")
        if settings.master_host is not None:
            replaced.add("MASTER_HOST")
        kept = [line for line in lines if _line_key(line) not in replaced]
        if kept and not kept[-1].endswith("\n"):
            kept[-1] += "\n"
        if settings.personality is not None:
            kept.append(f"PERSONALITY = {settings.personality.value}\n")
        if settings.master_host is not None:
            kept.append(f"MASTER_HOST = {settings.master_host}\n")
        return "".join(kept)

    def _write(self, content: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if self.base_path.exists():
                shutil.copymode(self.base_path, tmp_name)
            if self.user or self.group:
                shutil.chown(tmp_name, user=self.user, group=self.group)
            os.replace(tmp_name, self.path)
        except (OSError, LookupError) as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise ConfigError(f"cannot write overlay {self.path}: {e}") from e

    @contextmanager
    def _locked(self):
        deadline = time.monotonic() + self.lock_timeout
        if not self._mutex.acquire(timeout=self.lock_timeout):
            raise LockTimeoutError(f"overlay {self.path} is busy in this process")
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o600)
            try:
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except OSError:
                        if time.monotonic() >= deadline:
                            raise LockTimeoutError(
                                f"could not lock {self.lock_path} within {self.lock_timeout}s"
                            ) from None
                        time.sleep(self.poll_interval)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        finally:
            self._mutex.release()
