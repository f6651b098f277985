"""Orchestration package."""

from .pipeline import PipelineContext, SyncPipeline

__all__ = ["PipelineContext", "SyncPipeline"]
