"""Users, roles and OAuth credentials."""

from yoyaku.modules.users.models import StoredCredentials, User, UserSummary
from yoyaku.modules.users.service import CredentialStore, UserService

__all__ = ["CredentialStore", "StoredCredentials", "User", "UserService", "UserSummary"]
