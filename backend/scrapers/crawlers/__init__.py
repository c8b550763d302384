"""Browser session management."""

from .browser import BrowserSessionManager, SessionState

__all__ = ['BrowserSessionManager', 'SessionState']
