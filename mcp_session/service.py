from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict

from mcp_core.errors import AssistantError, QueryError

from .diagnostics import DiagnosticsProbe
from .rebuild import CommandRebuilder, RebuildResult
from .supervisor import SessionSupervisor


Payload = Dict[str, object]


class SessionService:
    """JSON-ready boundary over the supervisor for the presentation layer."""

    def __init__(
        self,
        supervisor: SessionSupervisor,
        *,
        diagnostics: DiagnosticsProbe | None = None,
        rebuilder: CommandRebuilder | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.diagnostics = diagnostics or DiagnosticsProbe(supervisor, logger=logger)
        self.rebuilder = rebuilder
        self.logger = logger or logging.getLogger(__name__)

    async def init(self) -> Payload:
        try:
            catalogue = await self.supervisor.ensure_ready()
        except AssistantError as err:
            return {"initialized": False, "error": str(err)}
        return {"initialized": True, "tools": catalogue.to_dicts()}

    async def query(self, query: str, *, trace_callback: Callable[[str], None] | None = None) -> Payload:
        if not query or not query.strip():
            return {"error": "Query is required"}
        try:
            result = await self.supervisor.run(query, trace_callback=trace_callback)
        except QueryError as err:
            self.logger.warning("query failed cause=%s/%s retryable=%s", err.cause_kind, err.cause_code, err.retryable)
            return {"error": str(err)}
        except AssistantError as err:
            return {"error": str(err)}
        return {"result": result}

    def status(self) -> Payload:
        return self.supervisor.status().to_dict()

    async def degrade(self, reason: str) -> None:
        await self.supervisor.degrade(reason)

    async def diagnose(self) -> Payload:
        return await self.diagnostics.run()

    async def rebuild(self) -> Payload:
        path = self.supervisor.config.resolve_artifact_path()
        if self.rebuilder is None or path is None:
            return RebuildResult(
                success=False,
                server_path=str(path) if path else "",
                server_exists=bool(path and Path(path).is_file()),
                error="No build command configured",
            ).to_dict()
        result = await self.rebuilder(path)
        return result.to_dict()
