#!/usr/bin/env python3
from __future__ import annotations

import argparse
import shutil
import signal
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import psutil

from blendchunk.chunking import calc_chunks, chunks_by_size, frame_range
from blendchunk.errors import ConfigurationError
from blendchunk.models import AfterRenderAction, Project, RenderOutcome, Renderer
from blendchunk.orchestrator import RenderManager, level_from_setting, setup_logging
from blendchunk.pool import RenderPool
from blendchunk.settings import load_settings


EXIT_CODES = {
    RenderOutcome.ALL_OK: 0,
    RenderOutcome.ABORTED: 130,
}


def _range_from_args(args) -> Tuple[int, int]:
    # Priority: explicit start/end, else frames-based selection.
    if args.start is not None and args.end is not None:
        return int(args.start), int(args.end)

    if not args.frames:
        raise SystemExit("You must provide either --start/--end OR --frames.")

    return frame_range(args.frames)


def auto_concurrency(max_concurrency: int) -> int:
    """Physical cores (blender already multithreads each render), bounded by max_concurrency."""
    cores = psutil.cpu_count(logical=False) or psutil.cpu_count(logical=True) or 1
    return max(1, min(int(max_concurrency), int(cores)))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Render a .blend file in parallel chunks, then mix down audio and join the chunks."
    )

    # Project
    p.add_argument("--blend", required=True, help="Path to the .blend file")
    p.add_argument("--output", required=True, help="Output folder (chunks are rendered to <output>/chunks)")
    p.add_argument("--name", default=None, help="Project name used for chunk and final file names (default: blend file name)")
    p.add_argument("--audio_codec", default=None, help="Scene audio codec (PCM, VORBIS, AAC, ...). Picks the mixdown file extension.")
    p.add_argument("--duration", type=float, default=None, help="Total duration in seconds passed to ffmpeg -t")

    # Range selection:
    p.add_argument("--start", type=int, default=None, help="Start frame (inclusive)")
    p.add_argument("--end", type=int, default=None, help="End frame (inclusive)")
    p.add_argument("--frames", default=None, help='Framespec like "1-300"')
    p.add_argument("--chunks", type=int, default=0, help="Number of chunks. 0 = same as concurrency.")
    p.add_argument("--chunk_size", type=int, default=None, help="Frames per chunk (overrides --chunks)")

    # Orchestration knobs
    p.add_argument("--concurrency", type=int, default=0, help="Blender process count. 0=auto.")
    p.add_argument("--max_concurrency", type=int, default=16, help="Upper bound when concurrency=0 auto.")
    p.add_argument("--renderer", default=None, choices=[r.value for r in Renderer], help="Render engine (default: settings)")
    p.add_argument("--action", default=None, help="After render action: NOTHING, MIXDOWN, JOIN or MIX_JOIN (default: settings)")
    p.add_argument("--delete_chunks", action="store_true", default=None, help="Delete the chunks folder after a successful join.")

    # Executables / settings
    p.add_argument("--blender_path", default=None, help="Path to blender executable (optional, auto-discovered)")
    p.add_argument("--ffmpeg_path", default=None, help="Path to ffmpeg executable (optional, auto-discovered)")
    p.add_argument("--settings", default=None, help="Settings JSON path (default: ~/.config/blendchunk/settings.json)")

    # Logging
    p.add_argument("--log_file", default=None, help="Log file path (default: stdout)")
    p.add_argument("-v", "--verbose", action="count", default=0, help="-v info, -vv debug (default: settings)")
    p.add_argument("--dry_run", action="store_true", help="Print chunk ranges/commands without running blender")
    return p


def build_project(args, concurrency: int) -> Project:
    s, e = _range_from_args(args)
    if args.chunk_size:
        chunks = chunks_by_size(s, e, int(args.chunk_size))
    else:
        chunks = calc_chunks(s, e, int(args.chunks) if args.chunks and args.chunks > 0 else concurrency)

    blend = Path(args.blend).expanduser().resolve()
    return Project(
        blend_file_path=blend,
        output_path=Path(args.output).expanduser().resolve(),
        project_name=args.name or blend.stem,
        chunks=chunks,
        max_concurrency=concurrency,
        audio_codec=args.audio_codec,
        duration=args.duration,
        renderer=Renderer(args.renderer) if args.renderer else None,
    )


def main(argv: Optional[List[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    settings = load_settings(Path(args.settings) if args.settings else None)
    level = level_from_setting(min(2, args.verbose) if args.verbose else settings.logging_level)
    logger = setup_logging(args.log_file, level)

    if args.blender_path:
        settings.blender_program = args.blender_path
    if args.ffmpeg_path:
        settings.ffmpeg_program = args.ffmpeg_path
    if not settings.check_program_paths():
        logger.critical("blender and ffmpeg executables are required. Set --blender_path / --ffmpeg_path.")
        return 2

    concurrency = int(args.concurrency) if args.concurrency and args.concurrency > 0 else auto_concurrency(args.max_concurrency)
    project = build_project(args, concurrency)
    action = AfterRenderAction.parse(args.action) if args.action else settings.after_render
    delete_chunks = settings.delete_chunks_folder if args.delete_chunks is None else True

    logger.info("Frame ranges: %s", [str(c) for c in project.chunks])

    if args.dry_run:
        renderer = project.renderer or settings.renderer
        for task in RenderPool(settings.blender_program).create_all(project, renderer):
            logger.info("DRY RUN chunk[%s]: %s", task.index, " ".join(task.cmd))
        return 0

    manager = RenderManager(settings)
    manager.setup(project, action)

    total_frames = project.total_frames
    total_chunks = len(project.chunks)
    manager.progress_changed.subscribe(
        lambda snap: logger.info(
            "Progress: %s/%s frames, %s/%s chunks",
            snap.frames_rendered, total_frames, snap.chunks_completed, total_chunks,
        )
    )
    manager.after_render_started.subscribe(lambda a: logger.info("After render: %s", a))

    def _sig_handler(signum, frame):
        logger.warning("Received signal %s. Aborting…", signum)
        manager.abort()

    signal.signal(signal.SIGINT, _sig_handler)
    signal.signal(signal.SIGTERM, _sig_handler)

    try:
        manager.start()
    except (ConfigurationError, FileNotFoundError) as ex:
        logger.critical("Cannot start render: %s", ex)
        manager.close()
        return 2

    outcome = None
    while outcome is None:
        outcome = manager.wait(timeout=0.5)

    if manager.report_file is not None:
        logger.error("See %s for details.", manager.report_file)
    if manager.output_file is not None and outcome is RenderOutcome.ALL_OK:
        logger.info("Output: %s", manager.output_file)

    if outcome is RenderOutcome.ALL_OK and delete_chunks and action & AfterRenderAction.JOIN:
        logger.info("Deleting chunks folder %s", project.chunks_dir)
        shutil.rmtree(str(project.chunks_dir), ignore_errors=True)

    manager.close()
    rc = EXIT_CODES.get(outcome, 1)
    logger.info("Run complete rc=%s", rc)
    return rc


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
