"""Rendering of chart trees into manifests and hooks."""

from .engine import RenderEngine, RenderedOutput
from .functions import TemplateFailure
from .objects import ReleaseInfo

__all__ = [
    "RenderEngine",
    "RenderedOutput",
    "ReleaseInfo",
    "TemplateFailure",
]
