"""Privacy mode enforcement and anonymization."""

from services.privacy.enforcement import (
    AccessDecision,
    PrivacyEnforcementService,
    PrivacyTransition,
    Requester,
    View,
    anonymize,
    anonymize_batch,
    validate_privacy_transition,
)

__all__ = [
    "AccessDecision",
    "PrivacyEnforcementService",
    "PrivacyTransition",
    "Requester",
    "View",
    "anonymize",
    "anonymize_batch",
    "validate_privacy_transition",
]
