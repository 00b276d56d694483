from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from .models import Chunk, Project, Renderer


# -----------------------------
# Blender: chunk render
# -----------------------------

def render_output_template(project: Project) -> str:
    # Blender replaces '#' with the frame range of video outputs: <name>-<start>-<end>.<ext>
    return str(project.chunks_dir / f"{project.project_name}-#")


def build_render_cmd(blender_program: str, project: Project, renderer: Renderer, chunk: Chunk) -> List[str]:
    return [
        blender_program,
        "-b", str(project.blend_file_path),
        "-o", render_output_template(project),
        "-E", renderer.value,
        "-s", str(chunk.start),
        "-e", str(chunk.end),
        "-a",
    ]


# -----------------------------
# Blender: audio mixdown
# -----------------------------

def build_mixdown_cmd(
    blender_program: str,
    blend_file: Path,
    mixdown_script: Path,
    frames: Chunk,
    output_dir: Path,
    file_name: str,
) -> List[str]:
    return [
        blender_program,
        "-b", str(blend_file),
        "-s", str(frames.start),
        "-e", str(frames.end),
        "-P", str(mixdown_script),
        "--",
        str(output_dir),
        file_name,
    ]


# -----------------------------
# FFmpeg: concat
# -----------------------------

def format_duration(seconds: float) -> str:
    return f"{float(seconds):.3f}"


def build_concat_cmd(
    ffmpeg_program: str,
    concat_file: Path,
    output_file: Path,
    duration: Optional[float] = None,
    mixdown_file: Optional[Path] = None,
) -> List[str]:
    cmd: List[str] = [
        ffmpeg_program,
        "-hide_banner",
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", str(concat_file),
    ]
    if mixdown_file is not None:
        cmd += [
            "-i", str(mixdown_file),
            "-map", "0:v",
            "-map", "1:a",
            "-c:v", "copy",
        ]
    else:
        cmd += ["-c", "copy"]

    if duration is not None and duration > 0:
        cmd += ["-t", format_duration(duration)]

    cmd += [str(output_file)]
    return cmd
