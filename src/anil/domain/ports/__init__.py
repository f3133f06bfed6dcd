from .cache import CachePort
from .player import PlaybackControllerPort, PlaybackSessionPort
from .provider import ProviderPort
from .watch_store import WatchProgressStorePort

__all__ = [
    "CachePort",
    "PlaybackControllerPort",
    "PlaybackSessionPort",
    "ProviderPort",
    "WatchProgressStorePort",
]
