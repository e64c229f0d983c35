"""Application services."""

from training_load_server.services.calibration import CalibrationEngine
from training_load_server.services.ingest import IngestionPipeline
from training_load_server.services.matching import MatchingEngine
from training_load_server.services.merge import MergePolicy
from training_load_server.services.metrics import PMCService
from training_load_server.services.pmc import PMCCalculator
from training_load_server.services.verification import VerificationService

__all__ = [
    "CalibrationEngine",
    "IngestionPipeline",
    "MatchingEngine",
    "MergePolicy",
    "PMCCalculator",
    "PMCService",
    "VerificationService",
]
