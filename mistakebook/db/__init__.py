"""Database package for mistakebook.

Only MistakeDatabase is exported as the public API.
"""

from .database import MistakeDatabase

__all__ = ["MistakeDatabase"]
