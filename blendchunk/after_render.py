from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from .commands import build_concat_cmd, build_mixdown_cmd
from .errors import AfterRenderError
from .models import AfterRenderAction, Project, RenderOutcome, StageResult, full_range
from .pool import RenderPool

logger = logging.getLogger("blendchunk.after_render")

MIX_KEY = "mixdown"
CONCAT_KEY = "concat"
CHUNK_TXT = "chunklist.txt"

VIDEO_FILE_EXTS = (
    ".avi", ".dv", ".flv", ".mkv", ".mov", ".mp4",
    ".mpeg", ".mpg", ".ogg", ".ogv", ".webm",
)

BAD_RESULT_FMT = (
    "Exit code: {0}\n\n"
    "Std Error:\n{1}\n\n\n"
    "Std Output:\n{2}"
)

STAGE_TITLES = {MIX_KEY: "Mixdown ", CONCAT_KEY: "FFmpeg concat "}


def build_stages(action: AfterRenderAction) -> List[str]:
    """Ordered stage keys for an action. Mixdown always runs before concat."""
    stages: List[str] = []
    if action & AfterRenderAction.MIXDOWN:
        stages.append(MIX_KEY)
    if action & AfterRenderAction.JOIN:
        stages.append(CONCAT_KEY)
    return stages


# -----------------------------
# Chunk files / concat list
# -----------------------------

def chunk_start_frame(path: Path) -> Optional[int]:
    """Start frame parsed from "<name>-<start>-<end>.<ext>", or None if the name doesn't match."""
    if path.suffix.lower() not in VIDEO_FILE_EXTS:
        return None
    split = path.name.split("-")
    if len(split) < 3:
        return None
    try:
        return int(split[-2])
    except ValueError:
        return None


def get_chunk_files(chunks_dir: Path) -> List[Path]:
    """Valid chunk files in chunks_dir, ordered by start frame."""
    chunks_dir = Path(chunks_dir)
    if not chunks_dir.is_dir():
        return []
    found = []
    for p in chunks_dir.iterdir():
        if not p.is_file():
            continue
        start = chunk_start_frame(p)
        if start is not None:
            found.append((start, p))
    found.sort(key=lambda item: item[0])
    return [p.resolve() for _, p in found]


def _ffconcat_escape_path(p: Path) -> str:
    # concat demuxer list syntax uses single quotes; escape single quotes if present.
    return str(p).replace("'", "'\\''")


def write_concat_file(chunk_files: List[Path], chunks_dir: Path) -> Path:
    list_file = Path(chunks_dir) / CHUNK_TXT
    lines = [f"file '{_ffconcat_escape_path(Path(p).resolve())}'" for p in chunk_files]
    list_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    logger.debug("concat: list file => %s (%d chunks)", list_file, len(chunk_files))
    return list_file


# -----------------------------
# Failure report
# -----------------------------

def write_report(output_dir: Path, failures: Dict[str, StageResult]) -> Path:
    report_file = Path(output_dir) / f"AfterRenderReport_{uuid.uuid4().hex[:8]}.txt"
    with report_file.open("a", encoding="utf-8") as f:
        for key, result in failures.items():
            f.write("\n\n")
            f.write(STAGE_TITLES.get(key, f"{key} "))
            f.write(BAD_RESULT_FMT.format(result.exit_code, result.stderr, result.stdout))
            f.write("\n")
    logger.warning("After render report written to %s", report_file)
    return report_file


# -----------------------------
# Pipeline
# -----------------------------

class AfterRenderPipeline:
    def __init__(
        self,
        project: Project,
        action: AfterRenderAction,
        pool: RenderPool,
        blender_program: str,
        ffmpeg_program: str,
        mixdown_script: Optional[Path],
        cancel_event: threading.Event,
    ):
        self.project = project
        self.action = action
        self.pool = pool
        self.blender_program = blender_program
        self.ffmpeg_program = ffmpeg_program
        self.mixdown_script = mixdown_script
        self.cancel_event = cancel_event
        self.results: Dict[str, StageResult] = {}
        self.report_file: Optional[Path] = None
        self.output_file: Optional[Path] = None

    @property
    def mixdown_path(self) -> Path:
        return self.project.output_path / self.project.mixdown_file_name

    def run(self) -> RenderOutcome:
        stages = build_stages(self.action)
        if not stages:
            return RenderOutcome.ALL_OK

        logger.info("AfterRender started. Action: %s", self.action)

        for key in stages:
            if self.cancel_event.is_set():
                return RenderOutcome.ABORTED
            try:
                if key == MIX_KEY:
                    result = self._mixdown()
                else:
                    result = self._concat()
            except AfterRenderError as ex:
                logger.error("%s could not run: %s", key, ex)
                result = StageResult(-1, "", str(ex))
            self.results[key] = result

        # exit codes caused by cancellation are not failures
        if self.cancel_event.is_set():
            return RenderOutcome.ABORTED

        failures = {k: r for k, r in self.results.items() if not r.ok}
        if failures:
            self.report_file = write_report(self.project.output_path, failures)
            if MIX_KEY in failures:
                return RenderOutcome.MIXDOWN_FAIL
            return RenderOutcome.CONCAT_FAIL

        logger.info("AfterRender finished.")
        return RenderOutcome.ALL_OK

    def _mixdown(self) -> StageResult:
        if self.mixdown_script is None:
            raise AfterRenderError("No mixdown script available", stage=MIX_KEY)
        cmd = build_mixdown_cmd(
            self.blender_program,
            self.project.blend_file_path,
            Path(self.mixdown_script),
            full_range(self.project.chunks),
            self.project.output_path,
            self.project.mixdown_file_name,
        )
        return self.pool.run_stage(MIX_KEY, cmd)

    def _concat(self) -> StageResult:
        chunk_files = get_chunk_files(self.project.chunks_dir)
        if not chunk_files:
            raise AfterRenderError(
                f"Failed to query chunk files: no '<name>-<start>-<end>.<ext>' video files in {self.project.chunks_dir}",
                stage=CONCAT_KEY,
            )

        concat_file = write_concat_file(chunk_files, self.project.chunks_dir)
        self.output_file = self.project.output_path / f"{self.project.project_name}{chunk_files[0].suffix}"

        mix = self.results.get(MIX_KEY)
        mixdown_file = self.mixdown_path if mix is not None and mix.ok else None

        cmd = build_concat_cmd(
            self.ffmpeg_program,
            concat_file,
            self.output_file,
            duration=self.project.duration,
            mixdown_file=mixdown_file,
        )
        return self.pool.run_stage(CONCAT_KEY, cmd)
