"""Build progress logging."""

from .build_logger import BuildProblem, BuildProgressLogger

__all__ = ["BuildProblem", "BuildProgressLogger"]
