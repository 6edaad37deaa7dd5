from foreman.state.store import StateStore, StateStoreError

__all__ = ["StateStore", "StateStoreError"]
