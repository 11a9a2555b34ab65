from __future__ import annotations

import logging
import stat
from datetime import datetime, timezone
from typing import Dict

from mcp_core.errors import ModelGatewayError

from .connection import ensure_executable
from .supervisor import GatewayFactory, SessionSupervisor


Report = Dict[str, object]


class DiagnosticsProbe:
    """
    Read-only health report over credentials, the tool-server artifact and the session.
    Each section records its own failure; ``run`` never raises for a failed sub-check.
    """

    def __init__(
        self,
        supervisor: SessionSupervisor,
        *,
        gateway_factory: GatewayFactory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.config = supervisor.config
        self._gateway_factory = gateway_factory or supervisor.make_gateway
        self.logger = logger or logging.getLogger(__name__)

    async def run(self) -> Report:
        self.logger.info("starting diagnosis")
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": self.config.environment,
            "apiKey": await self._check_api_key(),
            "serverFile": self._check_server_file(),
            "mcpClient": self._check_client(),
        }

    async def _check_api_key(self) -> Report:
        result: Report = {"exists": False, "valid": False, "error": None}
        try:
            api_key = self.config.resolve_api_key()
            result["exists"] = bool(api_key)
            if not api_key:
                result["error"] = f"{self.config.credential_env_name()} is not set"
                return result
            gateway = self._gateway_factory(api_key)
            result["models"] = await gateway.list_models()
            result["valid"] = True
        except ModelGatewayError as err:
            result["error"] = str(err)
        except Exception as err:  # noqa: BLE001
            self.logger.exception("api key check crashed")
            result["error"] = str(err)
        return result

    def _check_server_file(self) -> Report:
        result: Report = {"path": None, "exists": False, "executable": False, "error": None}
        try:
            path = self.config.resolve_artifact_path()
            if path is None:
                result["error"] = "Tool server artifact path is not configured"
                return result
            result["path"] = str(path)
            result["exists"] = path.is_file()
            if not result["exists"]:
                return result
            executable, fixed = ensure_executable(path, logger=self.logger)
            info = path.stat()
            result["executable"] = executable
            result["permissionsFixed"] = fixed
            result["permissions"] = stat.filemode(info.st_mode)
            result["size"] = info.st_size
        except OSError as err:
            result["error"] = str(err)
        return result

    def _check_client(self) -> Report:
        result: Report = {"initialized": False, "error": None}
        try:
            status = self.supervisor.status()
            result["initialized"] = status.initialized
            result["state"] = status.state.value
            result["toolsAvailable"] = status.tools_available
            result["tools"] = [{"name": tool.name, "description": tool.description} for tool in status.tools]
            if self.supervisor.last_error:
                result["lastError"] = self.supervisor.last_error
        except Exception as err:  # noqa: BLE001
            result["error"] = str(err)
        return result
