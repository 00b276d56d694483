from __future__ import annotations

from pathlib import Path

import pytest

from blendchunk.models import (
    AfterRenderAction,
    Chunk,
    Project,
    RenderOutcome,
    StageResult,
    full_range,
    mixdown_extension,
    total_length,
)


def test_chunk_length_and_str():
    c = Chunk(10, 19)
    assert c.length == 10
    assert str(c) == "10-19"
    assert Chunk(5, 5).length == 1


def test_chunk_rejects_reversed_range():
    with pytest.raises(ValueError):
        Chunk(20, 19)


def test_total_and_full_range():
    chunks = (Chunk(0, 9), Chunk(10, 24), Chunk(25, 25))
    assert total_length(chunks) == 26
    assert full_range(chunks) == Chunk(0, 25)


def test_project_coerces_and_validates(tmp_path):
    p = Project(
        blend_file_path=str(tmp_path / "a.blend"),
        output_path=str(tmp_path / "out"),
        project_name="a",
        chunks=[Chunk(1, 10), Chunk(11, 20)],
    )
    assert isinstance(p.blend_file_path, Path)
    assert isinstance(p.chunks, tuple)
    assert p.chunks_dir == tmp_path / "out" / "chunks"
    assert p.total_frames == 20
    assert p.mixdown_file_name == "a.ac3"

    with pytest.raises(ValueError):
        Project(tmp_path / "a.blend", tmp_path, "a", (Chunk(0, 1),), max_concurrency=0)


@pytest.mark.parametrize(
    "codec, ext",
    [(None, "ac3"), ("NONE", "ac3"), ("PCM", "wav"), ("VORBIS", "ogg"), ("FLAC", "flac"), ("MP3", "mp3"), ("AAC", "aac")],
)
def test_mixdown_extension(codec, ext):
    assert mixdown_extension(codec) == ext


@pytest.mark.parametrize(
    "value, expected",
    [
        (0, AfterRenderAction.NOTHING),
        (3, AfterRenderAction.MIX_JOIN),
        ("2", AfterRenderAction.JOIN),
        ("mixdown", AfterRenderAction.MIXDOWN),
        ("MIX_JOIN", AfterRenderAction.MIX_JOIN),
        ("MIXDOWN|JOIN", AfterRenderAction.MIX_JOIN),
        ("join, mixdown", AfterRenderAction.MIX_JOIN),
        ("", AfterRenderAction.NOTHING),
        (AfterRenderAction.JOIN, AfterRenderAction.JOIN),
    ],
)
def test_after_render_action_parse(value, expected):
    assert AfterRenderAction.parse(value) == expected


def test_after_render_action_parse_unknown_name():
    with pytest.raises(KeyError):
        AfterRenderAction.parse("EXPLODE")


def test_flag_membership():
    assert AfterRenderAction.MIX_JOIN & AfterRenderAction.MIXDOWN
    assert AfterRenderAction.MIX_JOIN & AfterRenderAction.JOIN
    assert not AfterRenderAction.JOIN & AfterRenderAction.MIXDOWN


def test_outcome_values():
    assert [o.value for o in RenderOutcome] == [
        "AllOk", "Aborted", "ChunkRenderFailed", "MixdownFail", "ConcatFail", "Unexpected",
    ]


def test_stage_result_ok():
    assert StageResult(0).ok
    assert not StageResult(1, "", "boom").ok
