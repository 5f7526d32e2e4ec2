"""Storage-bloat / write-amplification benchmark harness for a validator node."""

from .config import BenchConfig, ConfigError
from .pool import ObjectPool, TrackedObject
from .strategy import Strategy, WorkloadDecision
from .workload import run

__version__ = "0.1.0"
