from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from .discovery import resolve_blender, resolve_ffmpeg
from .errors import ExecutableNotFound
from .models import AfterRenderAction, Renderer

logger = logging.getLogger("blendchunk.settings")

SETTINGS_FILE = "settings.json"


def default_settings_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "blendchunk" / SETTINGS_FILE


@dataclass
class Settings:
    blender_program: str = "blender"
    ffmpeg_program: str = "ffmpeg"
    after_render: AfterRenderAction = AfterRenderAction.MIX_JOIN
    renderer: Renderer = Renderer.BLENDER_RENDER
    # 0 = warnings only, 1 = info, 2 = debug
    logging_level: int = 0
    delete_chunks_folder: bool = False

    def check_program_paths(self) -> bool:
        """Fill in missing executables through discovery. True if both are usable."""
        found = True
        for attr, resolve in (("blender_program", resolve_blender), ("ffmpeg_program", resolve_ffmpeg)):
            current = getattr(self, attr)
            if current and Path(current).is_file():
                continue
            try:
                setattr(self, attr, resolve(current))
            except ExecutableNotFound as ex:
                logger.warning("%s", ex)
                found = False
        return found

    def to_dict(self) -> dict:
        data = asdict(self)
        data["after_render"] = int(self.after_render)
        data["renderer"] = self.renderer.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        defaults = cls()
        return cls(
            blender_program=str(data.get("blender_program") or defaults.blender_program),
            ffmpeg_program=str(data.get("ffmpeg_program") or defaults.ffmpeg_program),
            after_render=AfterRenderAction.parse(data.get("after_render", defaults.after_render)),
            renderer=Renderer(data.get("renderer") or defaults.renderer.value),
            logging_level=int(data.get("logging_level", defaults.logging_level)),
            delete_chunks_folder=bool(data.get("delete_chunks_folder", defaults.delete_chunks_folder)),
        )


def load_settings(path: Optional[Path] = None) -> Settings:
    """Read settings JSON, creating the file with defaults when it doesn't exist."""
    p = Path(path) if path else default_settings_path()
    if not p.exists():
        settings = Settings()
        save_settings(settings, p)
        return settings
    with p.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Settings file must contain a JSON object: {p}")
    return Settings.from_dict(data)


def save_settings(settings: Settings, path: Optional[Path] = None) -> Path:
    p = Path(path) if path else default_settings_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
    return p
