"""Session Deck - a coordinator for many concurrent agent chat sessions."""

from sessiondeck.pipeline import SendPipeline, SessionView

__all__ = ["SendPipeline", "SessionView"]
__version__ = "0.1.0"
