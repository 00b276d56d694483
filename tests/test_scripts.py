from __future__ import annotations

import os

from blendchunk.scripts import HEADER, MIXDOWN_SCRIPT, deploy_mixdown_script


def test_deploy_writes_packaged_script(tmp_path):
    target = deploy_mixdown_script(tmp_path / "scripts")
    assert target == tmp_path / "scripts" / MIXDOWN_SCRIPT
    data = target.read_bytes()
    assert data.startswith(HEADER)
    assert b"bpy.ops.sound.mixdown" in data


def test_deploy_skips_identical_file(tmp_path):
    target = deploy_mixdown_script(tmp_path)
    os.utime(target, (1_000_000, 1_000_000))
    deploy_mixdown_script(tmp_path)
    assert target.stat().st_mtime == 1_000_000


def test_deploy_replaces_modified_file(tmp_path):
    target = deploy_mixdown_script(tmp_path)
    original = target.read_bytes()
    target.write_bytes(b"print('tampered')\n")
    deploy_mixdown_script(tmp_path)
    assert target.read_bytes() == original
