from __future__ import annotations

import errno
import functools
import logging
import shutil
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Set

from .after_render import AfterRenderPipeline
from .errors import ConfigurationError, FrameCountMismatch, RenderInProgressError
from .models import (
    AfterRenderAction,
    Project,
    ProgressSnapshot,
    RenderOutcome,
    Renderer,
    total_length,
)
from .pool import RenderPool, RenderTask
from .progress import ProgressThrottle
from .scripts import deploy_mixdown_script
from .settings import Settings, default_settings_path

logger = logging.getLogger("blendchunk.orchestrator")

FRAME_MARKER = "Fra:"
TICK_INTERVAL = 0.1


# -----------------------------
# Helpers: logging
# -----------------------------

def level_from_setting(logging_level: int) -> int:
    return {1: logging.INFO, 2: logging.DEBUG}.get(int(logging_level or 0), logging.WARNING)


def setup_logging(log_file: Optional[str], level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("blendchunk")
    logger.setLevel(level)
    logger.propagate = False

    # Clear handlers if re-run in same interpreter
    for h in list(logger.handlers):
        logger.removeHandler(h)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler: logging.Handler
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


# -----------------------------
# Helpers: output parsing
# -----------------------------

def parse_frame_number(line: str) -> Optional[int]:
    """Frame number from a blender "Fra:<n> ..." status line, else None."""
    if not line or not line.startswith(FRAME_MARKER):
        return None
    token = line.split(None, 1)[0][len(FRAME_MARKER):]
    try:
        return int(token)
    except ValueError:
        return None


# -----------------------------
# Observers
# -----------------------------

class Event:
    """A list of callbacks. Delivery is done by the RenderManager's notifier thread."""

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable) -> Callable:
        with self._lock:
            if handler not in self._handlers:
                self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Callable) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def handlers(self) -> List[Callable]:
        with self._lock:
            return list(self._handlers)


# -----------------------------
# Run state
# -----------------------------

@dataclass
class _Run:
    project: Project
    action: AfterRenderAction
    pool: RenderPool
    tasks: List[RenderTask]
    throttle: ProgressThrottle
    total_chunks: int
    in_progress: int = 0
    remaining: int = 0
    cursor: int = 0
    frames: Set[int] = field(default_factory=set)
    frames_lock: threading.Lock = field(default_factory=threading.Lock)
    failed: List[RenderTask] = field(default_factory=list)
    cancel: threading.Event = field(default_factory=threading.Event)
    tick_stop: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    finalized: bool = False
    pipeline: Optional[AfterRenderPipeline] = None

    def snapshot(self, chunks_completed: Optional[int] = None) -> ProgressSnapshot:
        with self.frames_lock:
            frames = len(self.frames)
        if chunks_completed is None:
            chunks_completed = self.total_chunks - self.remaining
        return ProgressSnapshot(frames, chunks_completed)


# -----------------------------
# Render manager
# -----------------------------

class RenderManager:
    """
    Renders a Project's chunks with at most `max_concurrency` blender processes,
    then runs the after-render actions (mixdown, concat).

    The project must not change while a render is running: calling setup() or
    start() during a run aborts it and raises RenderInProgressError. Every run
    ends with exactly one RenderOutcome delivered to the `finished` observers.
    """

    def __init__(
        self,
        settings: Settings,
        mixdown_script: Optional[Path] = None,
        scripts_dir: Optional[Path] = None,
        tick_interval: float = TICK_INTERVAL,
    ):
        self.settings = settings
        self.mixdown_script = Path(mixdown_script) if mixdown_script else None
        self.scripts_dir = Path(scripts_dir) if scripts_dir else default_settings_path().parent / "scripts"
        self.tick_interval = tick_interval

        self.progress_changed = Event("progress_changed")
        self.after_render_started = Event("after_render_started")
        self.finished = Event("finished")

        self._project: Optional[Project] = None
        self._action: AfterRenderAction = settings.after_render
        self._renderer: Optional[Renderer] = None
        self._blender: Optional[str] = None
        self._ffmpeg: Optional[str] = None

        self._lock = threading.RLock()
        self._running = False
        self._run: Optional[_Run] = None
        self._notifier = ThreadPoolExecutor(max_workers=1, thread_name_prefix="blendchunk-events")

        self.was_aborted = False
        self.result: Optional[RenderOutcome] = None
        self.error: Optional[BaseException] = None

    # ---- properties ----

    @property
    def in_progress(self) -> bool:
        return self._running

    @property
    def project(self) -> Optional[Project]:
        return self._project

    @property
    def action(self) -> AfterRenderAction:
        return self._action

    @property
    def renderer(self) -> Renderer:
        if self._renderer is not None:
            return self._renderer
        if self._project is not None and self._project.renderer is not None:
            return self._project.renderer
        return self.settings.renderer

    @property
    def frames_rendered(self) -> int:
        run = self._run
        if run is None:
            return 0
        with run.frames_lock:
            return len(run.frames)

    @property
    def chunks_in_progress(self) -> int:
        run = self._run
        return run.in_progress if run else 0

    @property
    def chunks_remaining(self) -> int:
        run = self._run
        return run.remaining if run else 0

    @property
    def report_file(self) -> Optional[Path]:
        run = self._run
        if run is None or run.pipeline is None:
            return None
        return run.pipeline.report_file

    @property
    def output_file(self) -> Optional[Path]:
        run = self._run
        if run is None or run.pipeline is None:
            return None
        return run.pipeline.output_file

    # ---- public API ----

    def setup(
        self,
        project: Project,
        action: Optional[AfterRenderAction] = None,
        renderer: Optional[Renderer] = None,
    ) -> None:
        if self._running:
            self.abort()
            raise RenderInProgressError("Cannot change settings while a render is in progress!")

        self._project = project
        self._action = AfterRenderAction.parse(action) if action is not None else self.settings.after_render
        self._renderer = renderer

    def start(self) -> None:
        if self._running:
            self.abort()
            raise RenderInProgressError("A render is already in progress")

        self._check_for_valid_properties()

        mixdown_script = self.mixdown_script
        if mixdown_script is None and self._action & AfterRenderAction.MIXDOWN:
            try:
                mixdown_script = deploy_mixdown_script(self.scripts_dir)
            except OSError as ex:
                raise ConfigurationError(f"Could not deploy mixdown script to: {self.scripts_dir}") from ex
            self.mixdown_script = mixdown_script

        with self._lock:
            run = self._reset_fields()
            self._run = run
            self._running = True
            self.was_aborted = False
            self.result = None
            self.error = None

        logger.info(
            "RENDER STARTING: %s chunk(s), %s frame(s), max_concurrency=%s, renderer=%s, action=%s",
            run.total_chunks,
            total_length(run.project.chunks),
            run.project.max_concurrency,
            self.renderer.value,
            self._action,
        )
        threading.Thread(target=self._tick_loop, args=(run,), name="blendchunk-dispatch", daemon=True).start()

    def abort(self) -> None:
        """Stop the render, kill every child process and report ABORTED. No-op if not running."""
        with self._lock:
            run = self._run
            if run is None or not self._running or run.finalized:
                return
            run.cancel.set()
            run.tick_stop.set()
            self.was_aborted = True

        logger.warning("RENDER ABORTED")
        run.pool.dispose_all()
        self._finish(run, RenderOutcome.ABORTED)

    def wait(self, timeout: Optional[float] = None) -> Optional[RenderOutcome]:
        """Block until the current run's outcome has been delivered to every observer."""
        run = self._run
        if run is None:
            return None
        if not run.done.wait(timeout):
            return None
        return self.result

    def close(self) -> None:
        self.abort()
        self._notifier.shutdown(wait=True)

    def __enter__(self) -> "RenderManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---- validation / reset ----

    def _check_for_valid_properties(self) -> None:
        programs = {}
        for name, value in (("blender", self.settings.blender_program), ("ffmpeg", self.settings.ffmpeg_program)):
            if not value or not str(value).strip():
                raise ConfigurationError(f"Required info missing: {name} path is not set")
            resolved = shutil.which(str(value))
            if resolved is None:
                raise ConfigurationError(f"{name} executable not found: {value}")
            programs[name] = resolved

        project = self._project
        if project is None:
            raise ConfigurationError("Invalid settings: no project configured")

        if len(project.chunks) == 0:
            raise ConfigurationError("Chunk list is empty")

        if not project.blend_file_path.is_file():
            raise FileNotFoundError(errno.ENOENT, "Could not find 'blend' file", str(project.blend_file_path))

        try:
            project.chunks_dir.mkdir(parents=True, exist_ok=True)
        except OSError as ex:
            raise ConfigurationError(f"Could not create 'chunks' folder: {project.chunks_dir}") from ex

        self._blender = programs["blender"]
        self._ffmpeg = programs["ffmpeg"]

    def _reset_fields(self) -> _Run:
        project = self._project
        run = _Run(
            project=project,
            action=self._action,
            pool=RenderPool(self._blender),
            tasks=[],
            throttle=ProgressThrottle(self._progress_callback),
            total_chunks=len(project.chunks),
        )
        run.pool.on_output = functools.partial(self._on_output, run)
        run.pool.on_exit = functools.partial(self._on_chunk_exit, run)
        run.tasks = run.pool.create_all(project, self.renderer)
        run.remaining = len(run.tasks)
        return run

    # ---- dispatch ----

    def _tick_loop(self, run: _Run) -> None:
        while not run.tick_stop.is_set():
            self._tick(run)
            run.tick_stop.wait(self.tick_interval)
        logger.debug("Dispatch loop stopped.")

    def _tick(self, run: _Run) -> None:
        spawn_failed: Optional[RenderTask] = None

        with self._lock:
            if run.tick_stop.is_set() or run.cancel.is_set():
                return

            # start new render procs only within the concurrency limit and until the end of the chunk list
            while run.in_progress < run.project.max_concurrency and run.cursor < len(run.tasks):
                task = run.tasks[run.cursor]
                run.in_progress += 1
                run.cursor += 1
                try:
                    run.pool.start(task)
                except OSError as ex:
                    logger.error("Could not start chunk[%s] frames=%s: %s", task.index, task.chunk, ex)
                    task.exit_code = -1
                    spawn_failed = task
                    break
                logger.debug("Started render n. %s, frames: %s", run.cursor, task.chunk)

            snapshot = run.snapshot()
            if snapshot.chunks_completed < run.total_chunks:
                run.throttle.report(snapshot)

        if spawn_failed is not None:
            self._on_chunk_exit(run, spawn_failed)

    def _on_output(self, run: _Run, task: RenderTask, line: str) -> None:
        frame = parse_frame_number(line)
        if frame is None:
            return
        with run.frames_lock:
            run.frames.add(frame)

    def _on_chunk_exit(self, run: _Run, task: RenderTask) -> None:
        with self._lock:
            if run.finalized or run.cancel.is_set():
                return
            run.in_progress -= 1
            run.remaining -= 1

            if task.exit_code != 0:
                run.failed.append(task)
                run.tick_stop.set()
                logger.error(
                    "Chunk[%s] frames=%s failed with code %s", task.index, task.chunk, task.exit_code
                )
            elif run.remaining > 0:
                return
            else:
                run.tick_stop.set()

        if run.failed:
            self._on_chunk_failed(run)
        else:
            self._on_chunks_finished(run)

    def _on_chunk_failed(self, run: _Run) -> None:
        logger.error("One or more render processes did not complete successfully")
        run.pool.dispose_all()
        self._finish(run, RenderOutcome.CHUNK_RENDER_FAILED)

    def _on_chunks_finished(self, run: _Run) -> None:
        # all render processes are done at this point
        frames = run.snapshot().frames_rendered
        expected = total_length(run.project.chunks)
        if frames != expected:
            err = FrameCountMismatch(
                f"Frames counted ({frames}) don't match the chunk list total length ({expected})"
            )
            logger.critical("%s", err)
            run.pool.dispose_all()
            self._finish(run, RenderOutcome.UNEXPECTED, error=err)
            return

        logger.info("RENDER FINISHED")

        with self._lock:
            if run.cancel.is_set():
                return
            # the '100%' report
            run.throttle.report(run.snapshot(run.total_chunks), force=True)
            self._emit(self.after_render_started, run.action)

            run.pipeline = AfterRenderPipeline(
                project=run.project,
                action=run.action,
                pool=run.pool,
                blender_program=self._blender,
                ffmpeg_program=self._ffmpeg,
                mixdown_script=self.mixdown_script,
                cancel_event=run.cancel,
            )

        threading.Thread(
            target=self._after_render, args=(run,), name="blendchunk-after-render", daemon=True
        ).start()

    def _after_render(self, run: _Run) -> None:
        outcome = RenderOutcome.UNEXPECTED
        error: Optional[BaseException] = None
        try:
            outcome = run.pipeline.run()
        except Exception as ex:
            logger.exception("After render failed")
            error = ex
        finally:
            run.pool.dispose_all()
        self._finish(run, outcome, error=error)

    # ---- reporting ----

    def _progress_callback(self, snapshot: ProgressSnapshot) -> None:
        self._emit(self.progress_changed, snapshot)

    def _emit(self, event: Event, arg) -> None:
        for handler in event.handlers():
            self._notifier.submit(self._deliver, event.name, handler, arg)

    @staticmethod
    def _deliver(name: str, handler: Callable, arg) -> None:
        try:
            handler(arg)
        except Exception:
            logger.exception("%s observer raised", name)

    def _finish(self, run: _Run, outcome: RenderOutcome, error: Optional[BaseException] = None) -> bool:
        """Record the run's terminal outcome. Only the first call counts; once cancelled only ABORTED counts."""
        with self._lock:
            if run.finalized:
                return False
            if run.cancel.is_set() and outcome is not RenderOutcome.ABORTED:
                return False
            run.finalized = True
            run.tick_stop.set()
            if run is self._run:
                self._running = False
                self.result = outcome
                self.error = error

            if outcome is RenderOutcome.ALL_OK:
                logger.info("Run complete: %s", outcome.value)
            else:
                logger.warning("Run complete: %s", outcome.value)

            self._emit(self.finished, outcome)
            self._notifier.submit(run.done.set)
        return True
