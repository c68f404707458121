"""Public APIs for the execute/tangle/export scheduler."""

from __future__ import annotations

from .errors import (
    CapabilityUnavailable,
    ConversionFault,
    EmbeddedExecutionFault,
    ErrorAggregator,
    ExportError,
    ExternalToolFailure,
    TangleFault,
)
from .formats import (
    TANGLE_FORMAT,
    Capability,
    ExportSpec,
    FormatRegistry,
    UnknownFormatError,
    default_specs,
)
from .invoker import STDOUT, ConverterInvoker, ExportDependencies
from .jobs import AdmissionController, JobQueue
from .reporter import StatusReporter
from .scheduler import Mode, RunOptions, RunResult, Scheduler
from .state import (
    InvalidTransitionError,
    SchedulerInvariantError,
    State,
    StateTracker,
    UnknownWorkItemError,
    WorkItem,
)
from .supervisor import ProcessSupervisor

from .config import (
    ConfigOverrides,
    ExportConfig,
    ExportConfigError,
    LoadResult,
    load_config,
)

__all__ = [
    "CapabilityUnavailable",
    "ConversionFault",
    "EmbeddedExecutionFault",
    "ErrorAggregator",
    "ExportError",
    "ExternalToolFailure",
    "TangleFault",
    "TANGLE_FORMAT",
    "Capability",
    "ExportSpec",
    "FormatRegistry",
    "UnknownFormatError",
    "default_specs",
    "STDOUT",
    "ConverterInvoker",
    "ExportDependencies",
    "AdmissionController",
    "JobQueue",
    "StatusReporter",
    "Mode",
    "RunOptions",
    "RunResult",
    "Scheduler",
    "InvalidTransitionError",
    "SchedulerInvariantError",
    "State",
    "StateTracker",
    "UnknownWorkItemError",
    "WorkItem",
    "ProcessSupervisor",
    "ConfigOverrides",
    "ExportConfig",
    "ExportConfigError",
    "LoadResult",
    "load_config",
]
