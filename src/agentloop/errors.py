"""Exception types raised by the loop engine and its resource managers."""

from __future__ import annotations


class AgentLoopError(Exception):
    """Base class for all agentloop errors."""

    code: str = "AGENT_LOOP_ERROR"


class ModelCallError(AgentLoopError):
    """The model transport failed; ends the run."""

    code = "MODEL_CALL_ERROR"


class ToolExecutionError(AgentLoopError):
    """A tool handler failed. Recorded and reported back to the model."""

    code = "TOOL_ERROR"


class ProcessStartError(AgentLoopError):
    """A background process could not be spawned."""

    code = "PROCESS_START_ERROR"


class BrowserDisposedError(AgentLoopError):
    """A browser operation was attempted after the session was torn down."""

    code = "BROWSER_DISPOSED"


class RunAlreadyStartedError(AgentLoopError, RuntimeError):
    """``LoopEngine.run`` was called more than once."""

    code = "RUN_ALREADY_STARTED"
