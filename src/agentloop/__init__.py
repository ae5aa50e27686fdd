"""agentloop - run an autonomous coding agent in a loop until its task is done."""

from importlib.metadata import PackageNotFoundError, version

from agentloop.engine import LoopEngine
from agentloop.errors import (
    AgentLoopError,
    BrowserDisposedError,
    ModelCallError,
    ProcessStartError,
    ToolExecutionError,
)
from agentloop.model import ModelClient
from agentloop.schemas import (
    CommandCompletion,
    CustomCompletion,
    EndReason,
    FileCompletion,
    LimitsConfig,
    LoopConfig,
    LoopHooks,
    LoopResult,
    LoopStatus,
    ModelRequest,
    ModelResponse,
    StuckDetectionConfig,
    StuckReason,
    ToolCallCompletion,
    ToolDefinition,
)

__all__ = [
    "AgentLoopError",
    "BrowserDisposedError",
    "CommandCompletion",
    "CustomCompletion",
    "EndReason",
    "FileCompletion",
    "LimitsConfig",
    "LoopConfig",
    "LoopEngine",
    "LoopHooks",
    "LoopResult",
    "LoopStatus",
    "ModelCallError",
    "ModelClient",
    "ModelRequest",
    "ModelResponse",
    "ProcessStartError",
    "StuckDetectionConfig",
    "StuckReason",
    "ToolCallCompletion",
    "ToolDefinition",
    "ToolExecutionError",
]

try:
    __version__ = version("agentloop")
except PackageNotFoundError:
    __version__ = "0.0.0"
