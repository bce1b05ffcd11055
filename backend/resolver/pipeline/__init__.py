"""Conversational resolution pipeline: single-shot and streamed delivery."""

from .deps import PipelineDeps, build_default_deps
from .graph import create_resolution_graph, resolve
from .streaming import resolve_stream

__all__ = [
    "PipelineDeps",
    "build_default_deps",
    "create_resolution_graph",
    "resolve",
    "resolve_stream",
]
