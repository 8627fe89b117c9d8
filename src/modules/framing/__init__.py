"""
Framing module - batches, images and pipeline checkpoints.
"""

from src.modules.framing.models import (
    Batch,
    Image,
    StepCheckpoint,
    ImageStatus,
    PipelineStep,
    CropRegion,
    PipelineTrigger,
    AggregateStatus,
    check_transition,
)

__all__ = [
    "Batch",
    "Image",
    "StepCheckpoint",
    "ImageStatus",
    "PipelineStep",
    "CropRegion",
    "PipelineTrigger",
    "AggregateStatus",
    "check_transition",
]
