from .factory import get_authority_client, get_facility_config
from .types import (
    AuthorizationStatus,
    VerificationOutcome,
    VerificationResult,
    VerifyRequest,
    VisitType,
)

__all__ = [
    "get_authority_client",
    "get_facility_config",
    "AuthorizationStatus",
    "VerificationOutcome",
    "VerificationResult",
    "VerifyRequest",
    "VisitType",
]
