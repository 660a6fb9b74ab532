"""SQLAlchemy database models."""
from dotenv import load_dotenv
from app.models.base import Base
from app.models.authentication import (
    GithubAuthentication,
    Provider,
    SpotifyAuthentication,
)
from app.models.account import Account, AccountState
from app.models.session import UserSession


load_dotenv()

__all__ = [
    "Base",
    "Provider",
    "SpotifyAuthentication",
    "GithubAuthentication",
    "Account",
    "AccountState",
    "UserSession",
]
