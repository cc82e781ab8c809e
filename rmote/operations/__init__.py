"""Operations (sync plan model and tree differ)"""
from .plan import Operation, OpKind, RemoteIndex, SyncPlan

__all__ = ["Operation", "OpKind", "RemoteIndex", "SyncPlan"]
