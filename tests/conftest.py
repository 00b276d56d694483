from __future__ import annotations

import json
import stat
import sys
import time
from pathlib import Path
from typing import Callable, List

import psutil
import pytest

from blendchunk.models import AfterRenderAction, Chunk, Project, RenderOutcome
from blendchunk.orchestrator import RenderManager
from blendchunk.settings import Settings


FAKE_BLENDER = '''#!{python}
import json, os, sys, time

args = sys.argv[1:]


def record(kind):
    log = os.environ.get("FAKE_CALL_LOG")
    if log:
        with open(log, "a") as f:
            f.write(json.dumps({{"kind": kind, "t": time.time(), "pid": os.getpid(), "args": args}}) + "\\n")


if "-P" in args:
    record("mixdown")
    out_dir, name = args[args.index("--") + 1:][:2]
    if os.environ.get("FAKE_MIXDOWN_HANG"):
        time.sleep(60)
    code = int(os.environ.get("FAKE_MIXDOWN_EXIT", "0"))
    if code:
        print("mixdown stdout")
        print("mixdown broke", file=sys.stderr)
    else:
        with open(os.path.join(out_dir, name), "wb") as f:
            f.write(b"audio")
    sys.exit(code)

s = int(args[args.index("-s") + 1])
e = int(args[args.index("-e") + 1])
out = args[args.index("-o") + 1]
record("render-start")
print("Blender 4.2.0 (hash abc built 2024-07-16)", flush=True)

delay = float(os.environ.get("FAKE_FRAME_DELAY", "0"))
skip = os.environ.get("FAKE_SKIP_FRAMES")
for f in range(s, e + 1):
    if skip and f == s:
        continue
    print("Fra:%d Mem:12.00M (Peak 14.00M) | Time:00:00.01 | Rendering 1 / 1 samples" % f, flush=True)
    print("Fra:%d Mem:12.00M (Peak 14.00M) | Time:00:00.02 | Sce: Scene Ve:0 Fa:0 La:0" % f, flush=True)
    if delay:
        time.sleep(delay)
print("Fra:abc | not a frame line", flush=True)

if os.environ.get("FAKE_HANG"):
    time.sleep(60)

fail = os.environ.get("FAKE_FAIL_START")
if fail is not None and int(fail) == s:
    record("render-end")
    print("Error: render failed", file=sys.stderr)
    sys.exit(1)

ext = os.environ.get("FAKE_CHUNK_EXT", ".mp4")
with open("%s%d-%d%s" % (out[:-1], s, e, ext), "wb") as f:
    f.write(b"video")
print("Blender quit", flush=True)
record("render-end")
'''

FAKE_FFMPEG = '''#!{python}
import json, os, sys, time

args = sys.argv[1:]
log = os.environ.get("FAKE_CALL_LOG")
if log:
    with open(log, "a") as f:
        f.write(json.dumps({{"kind": "concat", "t": time.time(), "pid": os.getpid(), "args": args}}) + "\\n")

code = int(os.environ.get("FAKE_CONCAT_EXIT", "0"))
if code:
    print("concat stdout")
    print("concat broke", file=sys.stderr)
    sys.exit(code)

with open(args[-1], "wb") as f:
    f.write(b"joined")
'''


def _write_executable(path: Path, source: str) -> Path:
    path.write_text(source.format(python=sys.executable), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    return path


class CallLog:
    def __init__(self, path: Path):
        self.path = path

    def entries(self) -> List[dict]:
        if not self.path.exists():
            return []
        return [json.loads(line) for line in self.path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def kinds(self) -> List[str]:
        return [e["kind"] for e in self.entries()]

    def of(self, kind: str) -> List[dict]:
        return [e for e in self.entries() if e["kind"] == kind]


@pytest.fixture
def tools(tmp_path: Path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    blender = _write_executable(bin_dir / "blender", FAKE_BLENDER)
    ffmpeg = _write_executable(bin_dir / "ffmpeg", FAKE_FFMPEG)
    log = CallLog(tmp_path / "calls.jsonl")
    monkeypatch.setenv("FAKE_CALL_LOG", str(log.path))
    for var in (
        "FAKE_FRAME_DELAY", "FAKE_SKIP_FRAMES", "FAKE_HANG", "FAKE_FAIL_START",
        "FAKE_CHUNK_EXT", "FAKE_MIXDOWN_EXIT", "FAKE_MIXDOWN_HANG", "FAKE_CONCAT_EXIT",
    ):
        monkeypatch.delenv(var, raising=False)
    return blender, ffmpeg, log


@pytest.fixture
def call_log(tools) -> CallLog:
    return tools[2]


@pytest.fixture
def settings(tools) -> Settings:
    blender, ffmpeg, _ = tools
    return Settings(
        blender_program=str(blender),
        ffmpeg_program=str(ffmpeg),
        after_render=AfterRenderAction.NOTHING,
    )


@pytest.fixture
def blend_file(tmp_path: Path) -> Path:
    p = tmp_path / "shot.blend"
    p.write_bytes(b"BLENDER-v420")
    return p


@pytest.fixture
def make_project(tmp_path: Path, blend_file: Path) -> Callable[..., Project]:
    def _make(chunks=((0, 9), (10, 19), (20, 29)), max_concurrency: int = 2, **kwargs) -> Project:
        return Project(
            blend_file_path=blend_file,
            output_path=kwargs.pop("output_path", tmp_path / "out"),
            project_name=kwargs.pop("project_name", "shot"),
            chunks=tuple(Chunk(s, e) for s, e in chunks),
            max_concurrency=max_concurrency,
            **kwargs,
        )

    return _make


@pytest.fixture
def manager(settings: Settings, tmp_path: Path):
    script = tmp_path / "mixdown_audio.py"
    script.write_text("# fake\n", encoding="utf-8")
    m = RenderManager(settings, mixdown_script=script, tick_interval=0.02)
    yield m
    m.close()


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def is_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def run_to_end(manager: RenderManager, timeout: float = 30.0) -> RenderOutcome:
    outcome = manager.wait(timeout)
    assert outcome is not None, "render did not finish in time"
    return outcome
