from .catalogue import ToolCatalogue
from .connection import ConnectionManager, ConnectionStatus, ensure_executable, resolve_launch_command
from .diagnostics import DiagnosticsProbe
from .orchestrator import QueryOrchestrator
from .rebuild import CommandRebuilder, RebuildResult
from .service import SessionService
from .supervisor import SessionState, SessionStatus, SessionSupervisor

__all__ = [
    "CommandRebuilder",
    "ConnectionManager",
    "ConnectionStatus",
    "DiagnosticsProbe",
    "QueryOrchestrator",
    "RebuildResult",
    "SessionService",
    "SessionState",
    "SessionStatus",
    "SessionSupervisor",
    "ToolCatalogue",
    "ensure_executable",
    "resolve_launch_command",
]
