"""Domain layer for Clinical-ETL.

This module contains the canonical record models, the port contracts and
error taxonomy, the schema validators and the resource mapper. All domain
code is pure Python with no external dependencies beyond Pydantic.
"""

from .models import (
    CanonicalObservation,
    NormalizedEventEnvelope,
    PersistedConfirmationEvent,
    PersistedRecord,
    RawEnvelope,
)

__all__ = [
    "CanonicalObservation",
    "NormalizedEventEnvelope",
    "PersistedConfirmationEvent",
    "PersistedRecord",
    "RawEnvelope",
]
