"""Disk-backed spool for telemetry events.

Events are made durable in append-only batch files, uploaded when the
network and power conditions allow, retried with backoff, evicted by age and
size, and purged when data-collection consent is withdrawn.
"""

from .bootstrap import Spool
from .config_manager.spool_config import SpoolConfig
from .models import ConsentState, EventRecord, UploadOutcome

__version__ = "0.1.0"

__all__ = ["Spool", "SpoolConfig", "ConsentState", "EventRecord", "UploadOutcome"]
