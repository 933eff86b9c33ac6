"""
Outbox Core Package

Database access, observability, and the transactional outbox.
"""

from . import database
from . import outbox

__all__ = ["database", "outbox"]
