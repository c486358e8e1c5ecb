"""Durable storage for task snapshots."""

from .snapshot import PersistenceSink, SqliteSnapshotStore

__all__ = ["PersistenceSink", "SqliteSnapshotStore"]
