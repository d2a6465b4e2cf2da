from .probe import ProbeResolver
from .store import Identity, PermissionStore, ResourceGrant
from .watcher import RBACWatcher

__all__ = ["Identity", "PermissionStore", "ProbeResolver", "RBACWatcher", "ResourceGrant"]
