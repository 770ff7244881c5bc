"""Projection models for multi-view geometry."""

from .pinhole import PinholeProjectionModel
from .protocol import ProjectionModel

__all__ = ["ProjectionModel", "PinholeProjectionModel"]
