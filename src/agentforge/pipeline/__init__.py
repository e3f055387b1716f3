"""Single-step agent pipeline"""

from .artifact_parser import ArtifactParser, CodeArtifactParser
from .validator import ArtifactValidator, ValidationRule, DEFAULT_RULES
from .corrector import AutoCorrector, CorrectionOutcome
from .context import ContextPrioritizer, ContextSelection
from .cache import ResponseCache, fingerprint, context_digest
from .step_pipeline import AgentStepPipeline

__all__ = [
    "ArtifactParser",
    "CodeArtifactParser",
    "ArtifactValidator",
    "ValidationRule",
    "DEFAULT_RULES",
    "AutoCorrector",
    "CorrectionOutcome",
    "ContextPrioritizer",
    "ContextSelection",
    "ResponseCache",
    "fingerprint",
    "context_digest",
    "AgentStepPipeline"
]
