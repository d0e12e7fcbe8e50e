"""Auth module.

Users and JWT bearer authentication for the billing API.
"""

from convertviral.modules.auth.jwt import create_access_token, get_current_user
from convertviral.modules.auth.models import User, UserPlan
from convertviral.modules.auth.repository import UserRepository

__all__ = [
    "create_access_token",
    "get_current_user",
    "User",
    "UserPlan",
    "UserRepository",
]
