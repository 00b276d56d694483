from __future__ import annotations

import pytest

from blendchunk import discovery
from blendchunk.discovery import discover_candidates, resolve_blender, resolve_ffmpeg, resolve_program
from blendchunk.errors import ConfigurationError, ExecutableNotFound


@pytest.fixture
def clean_env(monkeypatch):
    for var in discovery.BLENDER_ENV_VARS + discovery.FFMPEG_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def test_explicit_path_wins(tools, clean_env):
    blender, ffmpeg, _ = tools
    assert resolve_blender(str(blender)) == str(blender)
    assert resolve_ffmpeg(str(ffmpeg)) == str(ffmpeg)


def test_bare_name_resolved_on_path(tools, clean_env):
    blender, _, _ = tools
    clean_env.setenv("PATH", str(blender.parent))
    assert resolve_blender("blender") == str(blender)


def test_env_var_comes_before_path(tools, tmp_path, clean_env):
    blender, _, _ = tools
    other = tmp_path / "other-blender"
    other.write_text("", encoding="utf-8")
    clean_env.setenv("BLENDER_PATH", str(other))
    clean_env.setenv("PATH", str(blender.parent))

    candidates = discover_candidates("blender", discovery.BLENDER_ENV_VARS)
    assert candidates[0] == other
    assert blender in candidates
    assert resolve_blender(None) == str(other)


def test_missing_explicit_path_falls_back_to_discovery(tools, clean_env):
    _, ffmpeg, _ = tools
    clean_env.setenv("PATH", str(ffmpeg.parent))
    assert resolve_ffmpeg("/definitely/not/here/ffmpeg") == str(ffmpeg)


def test_not_found(clean_env):
    clean_env.setenv("PATH", "")
    with pytest.raises(ExecutableNotFound) as info:
        resolve_program(None, "blendchunk-no-such-tool", ("BLENDCHUNK_NO_SUCH_TOOL",))
    assert isinstance(info.value, ConfigurationError)
    assert "BLENDCHUNK_NO_SUCH_TOOL" in str(info.value)
