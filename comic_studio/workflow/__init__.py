"""
Workflow Orchestration
======================

High-level orchestration for comic production.

Components:
- ProductionPipeline: Main entry point driving a project through its stages
- AssetGenerationLoop: Sequential per-item character and panel generation
- ConsistencyVerifier: Style checks on character designs
"""

from .pipeline import ProductionPipeline
from .generation_loop import (
    AssetGenerationLoop,
    Collection,
    GenerationJob,
    LoopReport,
    ProgressEvent,
    ProgressKind,
)
from .verifier import ConsistencyVerifier

__all__ = [
    "ProductionPipeline",
    "AssetGenerationLoop",
    "Collection",
    "GenerationJob",
    "LoopReport",
    "ProgressEvent",
    "ProgressKind",
    "ConsistencyVerifier",
]
