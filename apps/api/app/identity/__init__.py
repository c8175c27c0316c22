from app.identity.models import AuthSession, Company, CredentialToken, TokenPurpose, User
from app.identity.service import AuthService, auth_service
from app.identity.sessions import SessionManager, session_manager
from app.identity.tokens import CredentialTokenLedger
from app.identity.users import UserAdminService, user_admin_service

__all__ = [
    "AuthSession",
    "Company",
    "CredentialToken",
    "TokenPurpose",
    "User",
    "AuthService",
    "auth_service",
    "SessionManager",
    "session_manager",
    "CredentialTokenLedger",
    "UserAdminService",
    "user_admin_service",
]
