"""PTY layer — pseudo-terminal processes and their output buffers.

Every session runs its shell on a managed PTY with process group
isolation, ANSI-aware line buffering, and exactly-once exit notification.
"""

from termsessions.pty.buffer import RollingBuffer, SearchMatch
from termsessions.pty.process import ProcessHandle, PTYProcess

__all__ = [
    "ProcessHandle",
    "PTYProcess",
    "RollingBuffer",
    "SearchMatch",
]
