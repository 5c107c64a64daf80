from dispatchgate.pipeline.envelope import MutationResult, PipelineStage, RequestEnvelope
from dispatchgate.pipeline.orchestrator import MutationPipeline

__all__ = [
    "MutationPipeline",
    "MutationResult",
    "PipelineStage",
    "RequestEnvelope",
]
