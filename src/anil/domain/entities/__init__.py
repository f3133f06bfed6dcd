from .playback import (
    CompletionEvent,
    EpisodeAction,
    PlaybackOutcome,
    PlayerPolicy,
    PositionSample,
    SessionState,
    TrackingPolicy,
    WatchProgress,
)
from .stream import (
    EpisodeRef,
    ResolutionPolicy,
    ResolutionRequest,
    ResolutionResult,
    StreamCandidate,
    StreamQuality,
    TranslationType,
)

__all__ = [
    "CompletionEvent",
    "EpisodeAction",
    "EpisodeRef",
    "PlaybackOutcome",
    "PlayerPolicy",
    "PositionSample",
    "ResolutionPolicy",
    "ResolutionRequest",
    "ResolutionResult",
    "SessionState",
    "StreamCandidate",
    "StreamQuality",
    "TrackingPolicy",
    "TranslationType",
    "WatchProgress",
]
