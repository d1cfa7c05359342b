"""Tracing module."""

from .tracer import ITracer, NullTracer, Tracer

__all__ = ["ITracer", "NullTracer", "Tracer"]
