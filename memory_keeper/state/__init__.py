from .mutex import StateMutex
from .persistence import AUX_FILES, StateStore
from .single_flight import SingleFlight

__all__ = ["AUX_FILES", "SingleFlight", "StateMutex", "StateStore"]
