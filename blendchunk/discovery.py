from __future__ import annotations

import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .errors import ExecutableNotFound

logger = logging.getLogger("blendchunk.discovery")

BLENDER_ENV_VARS = ("BLENDER_PATH", "BLENDER")
FFMPEG_ENV_VARS = ("FFMPEG_PATH", "FFMPEG")


def _dedupe_existing(paths: Iterable[Path]) -> List[Path]:
    seen = set()
    out: List[Path] = []
    for p in paths:
        rp = Path(os.path.expandvars(str(p.expanduser())))
        key = str(rp)
        if sys.platform == "win32":
            key = key.lower()
        if key in seen:
            continue
        if rp.is_file():
            seen.add(key)
            out.append(rp)
    return out


def _exe_name(name: str) -> str:
    return name + ".exe" if sys.platform == "win32" else name


def discover_candidates(name: str, env_vars: Sequence[str] = ()) -> List[Path]:
    """
    Return a list of plausible paths for `name` ("blender" / "ffmpeg") in priority order.
    This does not log; it only discovers.
    """
    candidates: List[Path] = []

    # 1) Explicit env vars
    for k in env_vars:
        v = os.environ.get(k)
        if v:
            candidates.append(Path(v))

    # 2) PATH
    w = shutil.which(_exe_name(name))
    if w:
        candidates.append(Path(w))

    # 3) OS defaults
    if sys.platform == "win32":
        roots = []
        for env in ("ProgramW6432", "ProgramFiles", "ProgramFiles(x86)"):
            v = os.environ.get(env)
            if v:
                roots.append(Path(v))
        if not roots:
            roots = [Path(r"C:\Program Files")]

        for r in roots:
            if name == "blender":
                # Typical: C:\Program Files\Blender Foundation\Blender 4.2\blender.exe
                foundation = r / "Blender Foundation"
                candidates.append(foundation / "Blender" / "blender.exe")
                if foundation.exists():
                    candidates.extend(sorted(foundation.glob("Blender */blender.exe"), reverse=True))
            else:
                candidates.append(r / "ffmpeg" / "bin" / "ffmpeg.exe")

    elif sys.platform == "darwin":
        if name == "blender":
            candidates.append(Path("/Applications/Blender.app/Contents/MacOS/Blender"))
        candidates.append(Path("/opt/homebrew/bin") / name)
        candidates.append(Path("/usr/local/bin") / name)

    else:
        candidates.append(Path("/usr/bin") / name)
        candidates.append(Path("/usr/local/bin") / name)
        candidates.append(Path("/snap/bin") / name)

    return _dedupe_existing(candidates)


def resolve_program(explicit: Optional[str], name: str, env_vars: Sequence[str] = ()) -> str:
    """
    Resolve an executable from an explicit path, env vars, PATH or install defaults.
    Raises ExecutableNotFound on failure.
    """
    if explicit and str(explicit).strip():
        p = Path(os.path.expandvars(os.path.expanduser(str(explicit).strip())))
        if p.is_file():
            logger.info("Using %s executable: %s", name, p)
            return str(p)
        w = shutil.which(str(p))
        if w:
            logger.info("Using %s executable: %s", name, w)
            return w
        logger.warning("Configured %s path does not exist: %s", name, p)

    for c in discover_candidates(name, env_vars):
        logger.info("Auto-located %s: %s", name, c)
        return str(c)

    env_hint = " or ".join(env_vars) if env_vars else "the matching env var"
    raise ExecutableNotFound(
        f"Could not locate the {name} executable. "
        f"Provide its path explicitly, set {env_hint}, or make sure it is on PATH."
    )


def resolve_blender(explicit: Optional[str]) -> str:
    return resolve_program(explicit, "blender", BLENDER_ENV_VARS)


def resolve_ffmpeg(explicit: Optional[str]) -> str:
    return resolve_program(explicit, "ffmpeg", FFMPEG_ENV_VARS)
