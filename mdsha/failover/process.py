"""Handle on the metadata server process (start/stop/reload/kill/test)."""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class MetadataServerProcess(ABC):
    """Lifecycle calls on the underlying metadata server"""

    @abstractmethod
    async def is_alive(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> bool:
        ...

    @abstractmethod
    async def stop(self) -> bool:
        ...

    @abstractmethod
    async def reload(self) -> bool:
        ...

    @abstractmethod
    async def kill(self) -> bool:
        ...


class MfsmasterProcess(MetadataServerProcess):
    """Drives the metadata server binary with its own daemon commands"""

    def __init__(self, binary: str, config_path: Path, timeout: float = 60.0):
        self.binary = binary
        self.config_path = Path(config_path)
        self.timeout = timeout

    def _command(self, action: str) -> List[str]:
        return [self.binary, "-c", str(self.config_path), action]

    async def _run(self, action: str) -> bool:
        command = self._command(action)
        logger.debug(f"Running {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.error(f"Cannot run {self.binary}: {e}")
            return False

        try:
            output, _ = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"{self.binary} {action} timed out after {self.timeout}s")
            process.kill()
            await process.wait()
            return False

        if process.returncode != 0:
            level = logging.DEBUG if action == "test" else logging.WARNING
            logger.log(level, f"{self.binary} {action} exited with {process.returncode}: "
                              f"{output.decode(errors='replace').strip()}")
            return False
        return True

    async def is_alive(self) -> bool:
        return await self._run("test")

    async def start(self) -> bool:
        return await self._run("start")

    async def stop(self) -> bool:
        return await self._run("stop")

    async def reload(self) -> bool:
        return await self._run("reload")

    async def kill(self) -> bool:
        return await self._run("kill")
