"""Infrastructure modules for the execution engine"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, IterationStats  # noqa: F401
from .control_server import ControlApi, ControlServer  # noqa: F401
from .delegation_store import JsonDelegationStore, JsonPortfolioSource  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"IterationStats",
	"ControlApi",
	"ControlServer",
	"JsonDelegationStore",
	"JsonPortfolioSource",
]
