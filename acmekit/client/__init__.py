from .client import AcmeClient, CertificateResource, ExternalAccountBindingCredentials
from .challenge_solver import DummySolver, ChallengeSolver
from .exceptions import (
    AcmeClientException,
    AcmeProblem,
    AccountDoesNotExist,
    AuthorizationInvalid,
    BadNonce,
    ChallengeInvalid,
    ConfigurationError,
    CouldNotCompleteChallenge,
    NoUsableChallenge,
    ObtainError,
    OrderInvalid,
    PropagationTimeout,
    ProviderError,
    RateLimited,
    TermsOfServiceRequired,
    ValidationError,
)
from .orchestrator import ChallengeOrchestrator
from .polling import RetryPolicy, poll_until
from .signer import NoncePool, RequestSigner

__all__ = [
    "AcmeClient",
    "CertificateResource",
    "ExternalAccountBindingCredentials",
    "DummySolver",
    "ChallengeSolver",
    "ChallengeOrchestrator",
    "RetryPolicy",
    "poll_until",
    "NoncePool",
    "RequestSigner",
    "AcmeClientException",
    "AcmeProblem",
    "AccountDoesNotExist",
    "AuthorizationInvalid",
    "BadNonce",
    "ChallengeInvalid",
    "ConfigurationError",
    "CouldNotCompleteChallenge",
    "NoUsableChallenge",
    "ObtainError",
    "OrderInvalid",
    "PropagationTimeout",
    "ProviderError",
    "RateLimited",
    "TermsOfServiceRequired",
    "ValidationError",
]
