from .challenge import Challenge, ChallengeStatus, ChallengeType
from .authorization import Authorization, AuthorizationStatus
from .identifier import Identifier, IdentifierType
from .order import Order, OrderStatus
from .account import Account, AccountStatus
from .directory import Directory, DirectoryMeta

__all__ = [
    "Account",
    "AccountStatus",
    "Challenge",
    "ChallengeStatus",
    "ChallengeType",
    "Authorization",
    "AuthorizationStatus",
    "Directory",
    "DirectoryMeta",
    "Identifier",
    "IdentifierType",
    "Order",
    "OrderStatus",
]
