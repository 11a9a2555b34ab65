from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Sequence

from .connection import ensure_executable


RebuildHook = Callable[[Path], Awaitable[object]]


@dataclass(frozen=True)
class RebuildResult:
    success: bool
    server_path: str
    server_exists: bool
    output: str = ""
    error_output: str = ""
    error: str | None = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "buildOutput": self.output or None,
            "buildError": self.error_output or None,
            "serverExists": self.server_exists,
            "serverPath": self.server_path,
            "error": self.error,
        }


class CommandRebuilder:
    """Runs an external build command that is expected to produce the tool-server artifact."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        timeout_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if not command:
            raise ValueError("Rebuild command must not be empty")
        self.command: List[str] = [str(part) for part in command]
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    async def __call__(self, artifact_path: Path) -> RebuildResult:
        self.logger.info("rebuilding tool server: %s", " ".join(self.command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=dict(os.environ),
            )
        except OSError as err:
            self.logger.error("rebuild command could not start: %s", err)
            return self._result(artifact_path, error=f"Build command failed to start: {err}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self.logger.error("rebuild timed out after %ss", self.timeout_seconds)
            return self._result(artifact_path, error=f"Build timed out after {self.timeout_seconds:g} seconds")

        output = stdout.decode("utf-8", errors="replace")
        error_output = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            self.logger.error("rebuild exited with rc=%s", proc.returncode)
            return self._result(
                artifact_path,
                output=output,
                error_output=error_output,
                error=f"Build command exited with status {proc.returncode}",
            )
        if not artifact_path.is_file():
            self.logger.error("rebuild finished but %s is missing", artifact_path)
            return self._result(
                artifact_path,
                output=output,
                error_output=error_output,
                error=f"Build completed but {artifact_path.name} file not found",
            )
        ensure_executable(artifact_path, logger=self.logger)
        self.logger.info("rebuild successful, server file located at %s", artifact_path)
        return self._result(artifact_path, output=output, error_output=error_output, success=True)

    @staticmethod
    def _result(
        artifact_path: Path,
        *,
        output: str = "",
        error_output: str = "",
        error: str | None = None,
        success: bool = False,
    ) -> RebuildResult:
        return RebuildResult(
            success=success,
            server_path=str(artifact_path),
            server_exists=artifact_path.is_file(),
            output=output,
            error_output=error_output,
            error=error,
        )
