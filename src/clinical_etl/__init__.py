"""Clinical-ETL: normalization and idempotent persistence of clinical records.

Heterogeneous clinical inputs (ad hoc JSON, delimited lab results, HL7 v2
messages) are normalized into one canonical observation, validated against
successive schema layers, mapped to a FHIR-aligned Observation and written
idempotently into a tenant-partitioned keyed store.
"""

__version__ = "1.0.0"
