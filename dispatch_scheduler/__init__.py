# dispatch-scheduler/dispatch_scheduler/__init__.py

from .models import (
    AvailabilityBlock,
    TimeSlot,
    Order,
    DropoffStop,
    Driver,
    StatusLogEntry,
    CandidateSlot,
    DriverCandidate,
    OrderStatus,
    SlotStatus,
)
from .config import DispatchConfig
from .errors import (
    DispatchError,
    NoCandidateDrivers,
    SlotConflict,
    InvalidTransition,
    MissingReason,
    RecordNotFound,
    PersistenceFailure,
)
from .store import DispatchStore, InMemoryStore
from .dispatch import AssignmentCoordinator
from .lifecycle import OrderLifecycle, allowed_transitions
from .slots import generate_candidate_slots
from .travel import HaversineEstimator, OsrmEstimator, build_estimator
from .scoring import rank_drivers
from .loader import load_store, save_store

__version__ = "1.0.0"

__all__ = [
    # Models
    "AvailabilityBlock",
    "TimeSlot",
    "Order",
    "DropoffStop",
    "Driver",
    "StatusLogEntry",
    "CandidateSlot",
    "DriverCandidate",
    "OrderStatus",
    "SlotStatus",
    # Core
    "AssignmentCoordinator",
    "OrderLifecycle",
    "DispatchStore",
    "InMemoryStore",
    "DispatchConfig",
    # Functions
    "generate_candidate_slots",
    "rank_drivers",
    "allowed_transitions",
    "build_estimator",
    "load_store",
    "save_store",
    # Estimators
    "HaversineEstimator",
    "OsrmEstimator",
    # Errors
    "DispatchError",
    "NoCandidateDrivers",
    "SlotConflict",
    "InvalidTransition",
    "MissingReason",
    "RecordNotFound",
    "PersistenceFailure",
]
