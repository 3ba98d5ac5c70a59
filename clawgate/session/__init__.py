"""Session management module."""

from clawgate.session.manager import Session, SessionRegistry

__all__ = ["Session", "SessionRegistry"]
