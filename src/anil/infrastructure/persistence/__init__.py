from .watch_progress_cache import CacheWatchProgressStore

__all__ = ["CacheWatchProgressStore"]
