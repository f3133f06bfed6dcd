"""ani-l: resolve episode streams, play them in mpv and track progress."""

__version__ = "0.1.0"
