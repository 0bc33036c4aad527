"""Session analysis pipeline package.

Modules are organised by the order in which a processing job executes:

1. `extraction` - probe and transcode the uploaded recording.
2. `transcription` - Amazon Transcribe words and timings.
3. `relevance` - optional prompt-adherence score.
4. `rules` / `rulepacks` - deterministic issue detection per language.
5. `refinement` / `prompts` - optional Bedrock review of rule candidates.
6. `metrics` / `coaching` - scores, grade, micro tips and key segments.
7. `embeddings` - optional Titan embeddings of session highlights.
8. `orchestrator` - runs the stages, owns the state machine and failures.

Only leaf modules are re-exported here; import the orchestrator and the
AI stages from their own modules, since the service layer imports
``types`` from this package.
"""

from .errors import (
    AiProviderError,
    AnalysisError,
    InvalidStateTransition,
    LeaseUnavailable,
    MediaExtractionError,
    PipelineError,
    PipelineErrorKind,
    RecordNotFound,
    TranscriptionError,
)
from .progress import StatusReport, describe_progress
from .types import (
    DetectedIssue,
    ExtractedMedia,
    PipelineRunContext,
    ProcessingMode,
    ProcessingOptions,
    RefinementResult,
    TranscriptionResult,
    Word,
)

__all__ = [
    "AiProviderError",
    "AnalysisError",
    "DetectedIssue",
    "ExtractedMedia",
    "InvalidStateTransition",
    "LeaseUnavailable",
    "MediaExtractionError",
    "PipelineError",
    "PipelineErrorKind",
    "PipelineRunContext",
    "ProcessingMode",
    "ProcessingOptions",
    "RecordNotFound",
    "RefinementResult",
    "StatusReport",
    "TranscriptionError",
    "TranscriptionResult",
    "Word",
    "describe_progress",
]
