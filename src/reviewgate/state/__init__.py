from reviewgate.state.store import StateError, StateStore

__all__ = ["StateError", "StateStore"]
