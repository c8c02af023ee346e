"""
Lifecycle tooling for a blockchain full node in development and
upgrade-rehearsal environments.

The package is split into small, well-scoped helpers: the snapshot pipeline,
the directory state manager, the process supervisor and the mode recipes
that compose them. ``setup_node.py`` is the command-line front end.
"""

from . import config, errors, locking, markers, modes, snapshot, state, supervisor
from .models import Marker, MarkerAction, RunOutcome, RunState, Settings, SnapshotTransfer
from .modes import NodeManager
from .supervisor import NodeSupervisor

__all__ = [
    "config",
    "errors",
    "locking",
    "markers",
    "modes",
    "snapshot",
    "state",
    "supervisor",
    "Marker",
    "MarkerAction",
    "NodeManager",
    "NodeSupervisor",
    "RunOutcome",
    "RunState",
    "Settings",
    "SnapshotTransfer",
]
