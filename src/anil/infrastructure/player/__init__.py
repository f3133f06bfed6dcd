"""mpv-backed playback sessions."""

from .ipc import MpvIpcChannel, MpvIpcError
from .mpv import MpvSession, MpvSessionController, build_mpv_args

__all__ = [
    "MpvIpcChannel",
    "MpvIpcError",
    "MpvSession",
    "MpvSessionController",
    "build_mpv_args",
]
