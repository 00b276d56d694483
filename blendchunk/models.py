from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple


CHUNK_DIR = "chunks"


@dataclass(frozen=True)
class Chunk:
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Chunk start ({self.start}) must be <= end ({self.end})")

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


def total_length(chunks: Iterable[Chunk]) -> int:
    return sum(c.length for c in chunks)


def full_range(chunks: Tuple[Chunk, ...]) -> Chunk:
    """Chunk spanning from the first chunk's start to the last chunk's end."""
    return Chunk(chunks[0].start, chunks[-1].end)


class Renderer(str, enum.Enum):
    BLENDER_RENDER = "BLENDER_RENDER"
    BLENDER_EEVEE = "BLENDER_EEVEE"
    BLENDER_WORKBENCH = "BLENDER_WORKBENCH"
    CYCLES = "CYCLES"


class AfterRenderAction(enum.IntFlag):
    NOTHING = 0
    MIXDOWN = 1
    JOIN = 2
    MIX_JOIN = MIXDOWN | JOIN

    @classmethod
    def parse(cls, value) -> "AfterRenderAction":
        """Accept an int, a member name ("MIX_JOIN") or a "MIXDOWN|JOIN" string."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip().upper()
        if text.isdigit():
            return cls(int(text))
        action = cls.NOTHING
        for part in text.replace(",", "|").split("|"):
            part = part.strip()
            if part:
                action |= cls[part]
        return action


class RenderOutcome(enum.Enum):
    ALL_OK = "AllOk"
    ABORTED = "Aborted"
    CHUNK_RENDER_FAILED = "ChunkRenderFailed"
    MIXDOWN_FAIL = "MixdownFail"
    CONCAT_FAIL = "ConcatFail"
    UNEXPECTED = "Unexpected"


@dataclass(frozen=True)
class StageResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ProgressSnapshot:
    frames_rendered: int
    chunks_completed: int


@dataclass(frozen=True)
class Project:
    blend_file_path: Path
    output_path: Path
    project_name: str
    chunks: Tuple[Chunk, ...]
    max_concurrency: int = 1
    audio_codec: Optional[str] = None
    # seconds; None leaves the concat output length to ffmpeg
    duration: Optional[float] = None
    renderer: Optional[Renderer] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "blend_file_path", Path(self.blend_file_path))
        object.__setattr__(self, "output_path", Path(self.output_path))
        object.__setattr__(self, "chunks", tuple(self.chunks))
        if int(self.max_concurrency) <= 0:
            raise ValueError("max_concurrency must be > 0")

    @property
    def chunks_dir(self) -> Path:
        return self.output_path / CHUNK_DIR

    @property
    def total_frames(self) -> int:
        return total_length(self.chunks)

    @property
    def mixdown_file_name(self) -> str:
        return f"{self.project_name}.{mixdown_extension(self.audio_codec)}"


def mixdown_extension(audio_codec: Optional[str]) -> str:
    if audio_codec is None or audio_codec == "NONE":
        return "ac3"
    if audio_codec == "PCM":
        return "wav"
    if audio_codec == "VORBIS":
        return "ogg"
    return audio_codec.lower()
