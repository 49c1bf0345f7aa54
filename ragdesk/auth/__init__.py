from ragdesk.auth.directory import Department, GraphDirectory, UserInfo
from ragdesk.auth.identity import EntraIdentityProvider, TokenSet

__all__ = [
    "Department",
    "GraphDirectory",
    "UserInfo",
    "EntraIdentityProvider",
    "TokenSet",
]
