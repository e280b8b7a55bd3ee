"""Health subsystem: concurrent app probes and the optional poller."""

from .engine import AppRef, HealthChecker, HealthReport, HealthResult, Status
from .scheduler import HealthScheduler
