from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Tuple

from mcp_core.client import build_gateway
from mcp_core.config import AppConfig
from mcp_core.errors import (
    ArtifactMissing,
    ConnectError,
    ConnectFailed,
    InvalidCredential,
    MissingCredential,
    ModelGatewayError,
    QueryError,
    SessionNotReady,
)
from mcp_core.types import ModelGateway, ToolDescriptor

from .catalogue import ToolCatalogue
from .connection import ConnectionManager, ConnectionStatus
from .orchestrator import QueryOrchestrator
from .rebuild import RebuildHook


GatewayFactory = Callable[[str], ModelGateway]
Sleeper = Callable[[float], Awaitable[object]]


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    ESTABLISHING = "establishing"
    LIVE = "live"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class SessionStatus:
    initialized: bool
    state: SessionState
    tools: Tuple[ToolDescriptor, ...] = ()

    @property
    def tools_available(self) -> bool:
        return bool(self.tools)

    def to_dict(self) -> Dict[str, object]:
        tools: List[Dict[str, object]] = [tool.to_dict() for tool in self.tools]
        return {
            "initialized": self.initialized,
            "toolsAvailable": self.tools_available,
            "tools": tools,
        }


class SessionSupervisor:
    """
    Holds the process's single session and is the only place that retries.

    The composition root creates one instance and passes it to every caller. ``ensure_ready``,
    ``degrade`` and ``shutdown`` are serialised by one lock; ``status`` never blocks.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        gateway_factory: GatewayFactory | None = None,
        connection: ConnectionManager | None = None,
        rebuild_hook: RebuildHook | None = None,
        logger: logging.Logger | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self._gateway_factory = gateway_factory or self._default_gateway
        self._connection = connection
        self._rebuild_hook = rebuild_hook
        self._sleep = sleep
        self._gateway: ModelGateway | None = None
        self._state = SessionState.NO_SESSION
        self._last_error: str | None = None
        self._lock = asyncio.Lock()

    def _default_gateway(self, api_key: str) -> ModelGateway:
        return build_gateway(self.config, api_key, logger=self.logger)

    def make_gateway(self, api_key: str) -> ModelGateway:
        return self._gateway_factory(api_key)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def gateway(self) -> ModelGateway | None:
        return self._gateway

    @property
    def connection(self) -> ConnectionManager:
        if self._connection is None:
            self._connection = ConnectionManager(settings=self.config.tool_server, logger=self.logger)
        return self._connection

    def status(self) -> SessionStatus:
        connection = self._connection
        live = (
            self._state is SessionState.LIVE
            and connection is not None
            and connection.status is ConnectionStatus.READY
        )
        return SessionStatus(
            initialized=live,
            state=self._state,
            tools=tuple(connection.catalogue) if live and connection is not None else (),
        )

    async def ensure_ready(self) -> ToolCatalogue:
        async with self._lock:
            if self._state is SessionState.LIVE:
                if self.connection.status is ConnectionStatus.READY:
                    return self.connection.catalogue
                self.logger.warning("session live but connection is %s; reconnecting", self.connection.status.value)
                self._state = SessionState.DEGRADED

            self._state = SessionState.ESTABLISHING
            try:
                catalogue = await self._establish()
            except BaseException as err:
                self._state = SessionState.NO_SESSION
                self._gateway = None
                self._last_error = str(err) or type(err).__name__
                self.logger.error("session establishment failed: %s", self._last_error)
                raise
            self._state = SessionState.LIVE
            self._last_error = None
            return catalogue

    async def _establish(self) -> ToolCatalogue:
        api_key = self.config.resolve_api_key()
        if not api_key:
            raise MissingCredential(f"{self.config.credential_env_name()} is not set")

        gateway = self.make_gateway(api_key)
        try:
            await gateway.list_models()
        except ModelGatewayError as err:
            raise InvalidCredential(f"API key validation failed: {err}") from err

        artifact = await self._locate_artifact()
        await self._connect_with_retry(artifact)
        self._gateway = gateway
        catalogue = self.connection.catalogue
        self.logger.info("session live with tools: %s", ", ".join(catalogue.names()))
        return catalogue

    async def _locate_artifact(self) -> Path:
        path = self.config.resolve_artifact_path()
        if path is None:
            raise ArtifactMissing("", "Tool server artifact path is not configured")
        if path.is_file():
            return path
        if self._rebuild_hook is not None:
            self.logger.warning("server file %s missing; invoking rebuild hook", path)
            try:
                await self._rebuild_hook(path)
            except Exception as err:  # noqa: BLE001
                raise ArtifactMissing(str(path), f"Server file not found: {path} (rebuild failed: {err})") from err
            if path.is_file():
                return path
        raise ArtifactMissing(str(path))

    async def _connect_with_retry(self, artifact: Path) -> None:
        attempts = 1 + self.config.session.max_retries
        delay = self.config.session.retry_delay_seconds
        last_error: ConnectError | None = None
        for attempt in range(attempts):
            if attempt > 0:
                await self._sleep(delay)
            try:
                await self.connection.connect(artifact)
            except ConnectError as err:
                last_error = err
                self.logger.warning("connect attempt %d/%d failed: %s", attempt + 1, attempts, err)
                continue
            return
        raise ConnectFailed(attempts, last_error) from last_error

    async def degrade(self, reason: str) -> None:
        async with self._lock:
            if self._state is not SessionState.LIVE:
                return
            self.logger.warning("session degraded: %s", reason)
            await self.connection.teardown()
            self._state = SessionState.DEGRADED
            self._last_error = reason

    async def run(self, query: str, *, trace_callback: Callable[[str], None] | None = None) -> str:
        await self.ensure_ready()
        gateway = self._gateway
        if gateway is None:
            raise SessionNotReady(self._state.value)
        orchestrator = QueryOrchestrator(
            connection=self.connection,
            gateway=gateway,
            logger=self.logger,
            trace_callback=trace_callback,
        )
        try:
            return await orchestrator.run(query)
        except QueryError as err:
            if err.stale:
                await self.degrade(str(err))
            raise

    async def shutdown(self) -> None:
        async with self._lock:
            if self._connection is not None:
                await self._connection.teardown()
            self._gateway = None
            self._state = SessionState.NO_SESSION
