"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the recurring-rule and occurrence tables used by
``recurring_engine``.
"""

from .recurring import Base, RtOccurrence, RtRule

__all__ = [
    "Base",
    "RtOccurrence",
    "RtRule",
]
