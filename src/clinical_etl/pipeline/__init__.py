"""Pipeline stages for Clinical-ETL.

Ingest receiver -> normalization orchestrator -> persistence engine, plus the
batch runner that gives every stage per-item failure isolation.
"""

from .batch import BatchReport, drive_channel, run_batch
from .normalizer import NormalizationOrchestrator, NormalizationSummary
from .persister import PersistenceEngine, PersistResult
from .receiver import IngestReceipt, IngestReceiver, build_reprocess_envelope

__all__ = [
    "BatchReport",
    "IngestReceipt",
    "IngestReceiver",
    "NormalizationOrchestrator",
    "NormalizationSummary",
    "PersistenceEngine",
    "PersistResult",
    "build_reprocess_envelope",
    "drive_channel",
    "run_batch",
]
