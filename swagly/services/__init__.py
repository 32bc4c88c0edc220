"""
Services package - Business logic layer
"""
from swagly.services.passport_service import passport_service
from swagly.services.proof_service import proof_service
from swagly.services.claim_gateway import claim_gateway
from swagly.services.approval_service import approval_service
from swagly.services.event_service import event_service

__all__ = [
    "passport_service",
    "proof_service",
    "claim_gateway",
    "approval_service",
    "event_service"
]
