from specpilot.ralph.analyzer import ErrorAnalyzer
from specpilot.ralph.applier import CorrectionApplier
from specpilot.ralph.base import (
    Analyzer,
    Applier,
    ApplyResult,
    CorrectionAttempt,
    CorrectionPlan,
    ErrorAnalysis,
    Generator,
    LoopOutcome,
)
from specpilot.ralph.generator import CorrectionGenerator
from specpilot.ralph.loop import RalphLoop

__all__ = [
    "Analyzer",
    "Applier",
    "ApplyResult",
    "CorrectionApplier",
    "CorrectionAttempt",
    "CorrectionGenerator",
    "CorrectionPlan",
    "ErrorAnalysis",
    "ErrorAnalyzer",
    "Generator",
    "LoopOutcome",
    "RalphLoop",
]
