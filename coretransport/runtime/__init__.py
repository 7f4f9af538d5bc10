"""Runtime helpers used by the transport orchestrator."""

from .helpers import format_exception_short, log_stage
from .history import ColumnarBuffer, DiagnosticsHistory
from .numba_config import numba_disabled_env, numba_status
from .progress import ProgressReporter

__all__ = [
    "ProgressReporter",
    "ColumnarBuffer",
    "DiagnosticsHistory",
    "format_exception_short",
    "log_stage",
    "numba_disabled_env",
    "numba_status",
]
