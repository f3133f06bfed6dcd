from .play_episode import PlayEpisodeUseCase
from .resolve_stream import ResolutionOrchestrator
from .track_watch import WatchStateTracker

__all__ = ["PlayEpisodeUseCase", "ResolutionOrchestrator", "WatchStateTracker"]
