from __future__ import annotations

from .models import AfterRenderAction, Chunk, Project, RenderOutcome, Renderer
from .orchestrator import RenderManager
from .settings import Settings

__version__ = "0.1.0"

__all__ = [
    "AfterRenderAction",
    "Chunk",
    "Project",
    "RenderManager",
    "RenderOutcome",
    "Renderer",
    "Settings",
]
