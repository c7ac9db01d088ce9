"""Filesystem watchers that wake groups."""

from nestor.watchers.collaboration import CollaborationWatcher, WatchedFolder

__all__ = ["CollaborationWatcher", "WatchedFolder"]
