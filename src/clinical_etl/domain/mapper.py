"""Resource Mapper.

Pure function mapping a CanonicalObservation onto a fixed-shape FHIR
Observation: fixed resource type and status, a LOINC coding, a Patient
subject reference and a UCUM quantity. No state; deterministic.
"""

from typing import Any

from clinical_etl.domain.models import CanonicalObservation

LOINC_SYSTEM = "http://loinc.org"
UCUM_SYSTEM = "http://unitsofmeasure.org"


def dto_to_observation(dto: CanonicalObservation) -> dict[str, Any]:
    """Map a validated DTO to a FHIR Observation resource.

    Parameters:
        dto: Validated canonical observation

    Returns:
        dict: Observation resource in FHIR JSON shape
    """
    return {
        "resourceType": "Observation",
        "status": "final",
        "code": {
            "coding": [{"system": LOINC_SYSTEM, "code": dto.code}],
        },
        "subject": {"reference": f"Patient/{dto.patient_id}"},
        "effectiveDateTime": dto.effective_date_time,
        "valueQuantity": {
            "value": dto.value,
            "unit": dto.unit,
            "system": UCUM_SYSTEM,
            "code": dto.unit,
        },
    }
