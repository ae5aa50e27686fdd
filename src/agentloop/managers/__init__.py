"""Resources that outlive a single iteration: background processes and the browser."""

from agentloop.managers.browser import BrowserManager, compress_screenshot
from agentloop.managers.process import ProcessManager, ProcessStartResult

__all__ = ["BrowserManager", "ProcessManager", "ProcessStartResult", "compress_screenshot"]
