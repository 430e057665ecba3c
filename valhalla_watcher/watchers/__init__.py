from .base import Watcher
from .encounters import EncountersWatcher
from .mints import MintsWatcher
from .pvp import PvpQueueWatcher

__all__ = ["Watcher", "MintsWatcher", "EncountersWatcher", "PvpQueueWatcher"]
