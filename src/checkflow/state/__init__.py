from checkflow.state.store import ChecklistStore, ConcurrentUpdateError, StoreError

__all__ = ["ChecklistStore", "ConcurrentUpdateError", "StoreError"]
