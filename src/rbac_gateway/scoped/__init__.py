from .lister_watcher import NamespaceWatch, PermissionResolver, ScopedListerWatcher
from .watcher import ScopedWatcher

__all__ = ["NamespaceWatch", "PermissionResolver", "ScopedListerWatcher", "ScopedWatcher"]
