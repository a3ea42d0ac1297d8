__all__ = [
    "LoadRunner",
    "RunConfig",
    "ArrivalDistribution",
    "CorrectionMode",
    "DispatchModel",
    "LoadShedding",
    "Histogram",
    "merge_histograms",
    "correct_latencies",
    "Outcome",
    "OutcomeKind",
    "RunReport",
    "HttpTarget",
    "SimulatedTarget",
    "ConfigurationError",
    "SaturationError",
    "SchedulerOverrunError",
]


from .config import ArrivalDistribution, CorrectionMode, DispatchModel, LoadShedding, RunConfig
from .core import LoadRunner
from .errors import ConfigurationError, SaturationError, SchedulerOverrunError
from .histogram import Histogram, merge_histograms
from .models import Outcome, OutcomeKind, RunReport
from .recorder import correct_latencies
from .targets import HttpTarget, SimulatedTarget
