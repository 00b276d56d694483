from __future__ import annotations

import hashlib
import logging
from importlib import resources
from pathlib import Path

logger = logging.getLogger("blendchunk.scripts")

MIXDOWN_SCRIPT = "mixdown_audio.py"
HEADER = b"# Generated by blendchunk, do not modify!\n"


def _packaged_script(name: str) -> bytes:
    return HEADER + (resources.files("blendchunk") / "resources" / name).read_bytes()


def deploy_script(name: str, target_dir: Path) -> Path:
    """Write a packaged helper script to target_dir, only when its contents differ."""
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    dest = target_dir / name

    payload = _packaged_script(name)
    if dest.exists():
        current = hashlib.sha256(dest.read_bytes()).hexdigest()
        if current == hashlib.sha256(payload).hexdigest():
            return dest

    dest.write_bytes(payload)
    logger.info("Wrote helper script %s", dest)
    return dest


def deploy_mixdown_script(target_dir: Path) -> Path:
    return deploy_script(MIXDOWN_SCRIPT, target_dir)
