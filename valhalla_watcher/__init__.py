"""Watches Valhalla for Vera mints, encounters and PvP queue entries."""

from .config import WatcherConfig, load_config
from .errors import ConfigError, RpcError, RunCancelled, WatcherError
from .models import Cursor, SubscriberState, VeraCard
from .service import WatcherService, build_service

__version__ = "0.1.0"

__all__ = [
    "WatcherConfig",
    "load_config",
    "WatcherError",
    "ConfigError",
    "RpcError",
    "RunCancelled",
    "Cursor",
    "SubscriberState",
    "VeraCard",
    "WatcherService",
    "build_service",
]
