"""
Monitorly Probe - Host metrics probe.

Collects CPU, memory, disk, service, session, login failure and port
metrics, and sends them to the Monitorly API or a local file.
"""

from .version import __version__
from .config import ProbeConfig, ConfigError
from .batching import BatchAggregator, BatchScheduler
from .sender import APISender, SendContext, SendResult, Sender
from .file_sender import FileSender
from .agent import ProbeAgent, run_probe

__all__ = [
    "__version__",
    "ProbeConfig",
    "ConfigError",
    "BatchAggregator",
    "BatchScheduler",
    "APISender",
    "SendContext",
    "SendResult",
    "Sender",
    "FileSender",
    "ProbeAgent",
    "run_probe",
]
