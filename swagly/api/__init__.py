"""
API routers package
"""
from swagly.api import (
    system,
    proofs,
    passports,
    admin
)

__all__ = [
    "system",
    "proofs",
    "passports",
    "admin"
]
