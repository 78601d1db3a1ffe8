"""chatpilot - response modes and tool-call lifecycle for chat assistants."""

__version__ = "0.1.0"

from chatpilot.config import Config
from chatpilot.orchestrator import ResponseOrchestrator, create_orchestrator, select_mode

__all__ = ["Config", "ResponseOrchestrator", "create_orchestrator", "select_mode", "__version__"]
