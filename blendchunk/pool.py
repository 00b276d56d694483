from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import psutil

from .commands import build_render_cmd
from .errors import AfterRenderError
from .models import Chunk, Project, Renderer, StageResult

logger = logging.getLogger("blendchunk.pool")

OutputObserver = Callable[["RenderTask", str], None]
ExitObserver = Callable[["RenderTask"], None]


# -----------------------------
# Types
# -----------------------------

@dataclass
class RenderTask:
    index: int
    chunk: Chunk
    cmd: List[str]
    popen: Optional[subprocess.Popen] = None
    start_time: Optional[float] = None
    exit_code: Optional[int] = None
    detached: bool = False

    @property
    def started(self) -> bool:
        return self.popen is not None

    @property
    def pid(self) -> Optional[int]:
        return self.popen.pid if self.popen is not None else None


# -----------------------------
# Process helpers
# -----------------------------

def _popen_kwargs_for_child() -> dict:
    """Platform-specific kwargs so terminal signals reach the runner, not blender/ffmpeg directly."""
    if os.name == "nt":
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def terminate_process_tree(proc: Optional[subprocess.Popen], grace_sec: float = 3.0) -> None:
    """Best-effort graceful terminate, then hard-kill, of proc and all its descendants."""
    if proc is None or proc.poll() is not None:
        return

    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []

    for child in children:
        try:
            child.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    try:
        proc.terminate()
    except OSError as ex:
        logger.debug("terminate pid=%s failed: %s", proc.pid, ex)

    try:
        _, alive = psutil.wait_procs(children, timeout=grace_sec)
    except psutil.Error:
        alive = children
    for child in alive:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    try:
        proc.wait(timeout=grace_sec)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        proc.kill()
        logger.warning("Hard-killed pid=%s.", proc.pid)
    except OSError as ex:
        logger.debug("kill pid=%s failed: %s", proc.pid, ex)


# -----------------------------
# Pool
# -----------------------------

class RenderPool:
    """
    Owns one process handle per chunk plus any post-processing processes.

    Chunk processes are created lazily: create_all() only builds commands,
    start() spawns. Every spawned process is killed by dispose_all().
    """

    def __init__(
        self,
        blender_program: str,
        on_output: Optional[OutputObserver] = None,
        on_exit: Optional[ExitObserver] = None,
        env: Optional[dict] = None,
        kill_grace_sec: float = 3.0,
    ):
        self.blender_program = blender_program
        self.on_output = on_output
        self.on_exit = on_exit
        self.env = env
        self.kill_grace_sec = kill_grace_sec
        self.tasks: List[RenderTask] = []
        self._stage_procs: List[subprocess.Popen] = []
        self._lock = threading.Lock()
        self._closed = False

    def create_all(self, project: Project, renderer: Renderer) -> List[RenderTask]:
        self.tasks = [
            RenderTask(i, chunk, build_render_cmd(self.blender_program, project, renderer, chunk))
            for i, chunk in enumerate(project.chunks)
        ]
        return list(self.tasks)

    def start(self, task: RenderTask) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Render pool has been disposed")
            if task.started:
                raise RuntimeError(f"Task {task.index} was already started")

            logger.debug("CMD: %s", " ".join(task.cmd))
            task.popen = subprocess.Popen(
                task.cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=self.env,
                **_popen_kwargs_for_child(),
            )
            task.start_time = time.time()

        logger.info("Launched chunk[%s] pid=%s frames=%s", task.index, task.pid, task.chunk)
        threading.Thread(target=self._watch, args=(task,), daemon=True).start()
        threading.Thread(target=self._drain_stderr, args=(task,), daemon=True).start()

    def _watch(self, task: RenderTask) -> None:
        """Feed stdout lines to the output observer, then report the exit."""
        pop = task.popen
        try:
            for line in iter(pop.stdout.readline, ""):
                if task.detached:
                    continue
                line = line.rstrip("\r\n")
                logger.debug("[%s STDOUT] %s", pop.pid, line)
                if self.on_output is not None:
                    self.on_output(task, line)
        finally:
            try:
                pop.stdout.close()
            except OSError:
                pass

        task.exit_code = pop.wait()
        if task.detached:
            return
        logger.info(
            "Chunk[%s] pid=%s exited with code %s after %.1fs",
            task.index, pop.pid, task.exit_code, time.time() - task.start_time,
        )
        if self.on_exit is not None:
            self.on_exit(task)

    def _drain_stderr(self, task: RenderTask) -> None:
        pop = task.popen
        try:
            for line in iter(pop.stderr.readline, ""):
                logger.debug("[%s STDERR] %s", pop.pid, line.rstrip("\r\n"))
        finally:
            try:
                pop.stderr.close()
            except OSError:
                pass

    def run_stage(self, key: str, cmd: List[str]) -> StageResult:
        """Run a post-processing command to completion, capturing its output."""
        with self._lock:
            if self._closed:
                raise AfterRenderError("Render pool has been disposed", stage=key)
            logger.info("Running %s: %s", key, " ".join(cmd))
            pop = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=self.env,
                **_popen_kwargs_for_child(),
            )
            self._stage_procs.append(pop)

        out, err = pop.communicate()
        logger.info("%s exited with code %s (pid=%s)", key, pop.returncode, pop.pid)
        return StageResult(pop.returncode, out or "", err or "")

    def kill(self, task: RenderTask) -> None:
        """Kill a task's process if it is still running. Safe to call repeatedly."""
        task.detached = True
        if task.popen is None:
            return
        try:
            terminate_process_tree(task.popen, grace_sec=self.kill_grace_sec)
        except (OSError, psutil.Error) as ex:
            # already gone or not ours anymore, the handle is discarded either way
            logger.debug("Could not kill chunk[%s] pid=%s: %s", task.index, task.pid, ex)

    def dispose_all(self) -> None:
        with self._lock:
            self._closed = True
            tasks = list(self.tasks)
            stage_procs = list(self._stage_procs)

        for task in tasks:
            self.kill(task)
        for pop in stage_procs:
            try:
                terminate_process_tree(pop, grace_sec=self.kill_grace_sec)
            except (OSError, psutil.Error) as ex:
                logger.debug("Could not kill pid=%s: %s", pop.pid, ex)

