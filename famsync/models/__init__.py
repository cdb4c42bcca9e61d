"""SQLAlchemy ORM models.

All models are imported here so that ``Base.metadata`` knows every table
before ``create_all`` runs.
"""

from famsync.models.family import Family  # noqa: F401
from famsync.models.membership import Membership, MembershipStatus, Role  # noqa: F401
from famsync.models.user import UserProfile  # noqa: F401

__all__ = [
    "Family",
    "Membership",
    "MembershipStatus",
    "Role",
    "UserProfile",
]
