import os
import threading
import time
from pathlib import Path

import pytest

import chunkflow.stitcher as stitcher_mod
from chunkflow.config import StitchSettings
from chunkflow.errors import OperationCancelled, StitchError
from chunkflow.stitcher import OutputStitcher, build_concat_command, write_concat_list


def _chunks(tmp_path: Path, n: int):
    paths = []
    for i in range(1, n + 1):
        p = tmp_path / f"clip_chunk{i:02d}_00001.mp4"
        p.write_bytes(b"x")
        paths.append(p)
    return paths


class ScriptedFfmpeg:
    """Replaces OutputStitcher._run_ffmpeg with scripted exit codes."""

    def __init__(self, codes):
        self.codes = list(codes)
        self.commands = []
        self.lists = []

    def __call__(self, cmd, timeout_s, cancel):
        self.commands.append((cmd, timeout_s))
        list_path = Path(cmd[cmd.index("-i") + 1])
        self.lists.append(list_path.read_text(encoding="utf-8"))
        code = self.codes.pop(0)
        if code == 0:
            Path(cmd[-2]).write_bytes(b"joined")
        return code, "" if code == 0 else "Non-monotonous DTS"


@pytest.fixture(autouse=True)
def _no_ffmpeg_lookup(monkeypatch):
    monkeypatch.setattr(stitcher_mod, "_require_cmd", lambda *_: "/usr/bin/ffmpeg")


def test_single_artifact_returned_without_ffmpeg(tmp_path: Path, monkeypatch):
    (only,) = _chunks(tmp_path, 1)
    st = OutputStitcher()
    fake = ScriptedFfmpeg([])
    monkeypatch.setattr(st, "_run_ffmpeg", fake)

    assert st.stitch([only], tmp_path / "final.mp4") == only
    assert fake.commands == []


def test_stream_copy_success(tmp_path: Path, monkeypatch):
    chunks = _chunks(tmp_path, 3)
    st = OutputStitcher()
    fake = ScriptedFfmpeg([0])
    monkeypatch.setattr(st, "_run_ffmpeg", fake)
    statuses = []

    out = st.stitch(chunks, tmp_path / "out" / "clip_final.mp4", on_status=statuses.append)

    assert out == tmp_path / "out" / "clip_final.mp4"
    assert out.read_bytes() == b"joined"
    (cmd, timeout), = fake.commands
    assert cmd[cmd.index("-c") + 1] == "copy"
    assert timeout == 600.0
    assert [line.split("/")[-1] for line in fake.lists[0].splitlines()] == [
        "clip_chunk01_00001.mp4'",
        "clip_chunk02_00001.mp4'",
        "clip_chunk03_00001.mp4'",
    ]
    # List file is removed, chunk files are kept.
    assert not (tmp_path / "out" / "clip_final_concat.txt").exists()
    assert all(p.exists() for p in chunks)
    assert statuses[-1].startswith("Stitched 3 chunks")


def test_reencode_fallback_after_copy_failure(tmp_path: Path, monkeypatch):
    chunks = _chunks(tmp_path, 2)
    st = OutputStitcher()
    fake = ScriptedFfmpeg([1, 0])
    monkeypatch.setattr(st, "_run_ffmpeg", fake)

    st.stitch(chunks, tmp_path / "final.mp4")

    (copy_cmd, copy_timeout), (enc_cmd, enc_timeout) = fake.commands
    assert "copy" in copy_cmd
    assert enc_cmd[enc_cmd.index("-c:v") + 1] == "libx264"
    assert enc_cmd[enc_cmd.index("-c:a") + 1] == "aac"
    assert enc_cmd[enc_cmd.index("-crf") + 1] == "23"
    assert (copy_timeout, enc_timeout) == (600.0, 900.0)


def test_reencode_failure_raises(tmp_path: Path, monkeypatch):
    st = OutputStitcher()
    monkeypatch.setattr(st, "_run_ffmpeg", ScriptedFfmpeg([1, 1]))
    with pytest.raises(StitchError):
        st.stitch(_chunks(tmp_path, 2), tmp_path / "final.mp4")
    assert not (tmp_path / "final_concat.txt").exists()


def test_no_fallback_when_disabled(tmp_path: Path, monkeypatch):
    st = OutputStitcher(StitchSettings(reencode_fallback=False))
    fake = ScriptedFfmpeg([1])
    monkeypatch.setattr(st, "_run_ffmpeg", fake)
    with pytest.raises(StitchError):
        st.stitch(_chunks(tmp_path, 2), tmp_path / "final.mp4")
    assert len(fake.commands) == 1


def test_missing_or_empty_inputs(tmp_path: Path):
    st = OutputStitcher()
    with pytest.raises(StitchError):
        st.stitch([], tmp_path / "final.mp4")
    with pytest.raises(StitchError, match="Missing"):
        st.stitch([tmp_path / "nope.mp4", tmp_path / "nope2.mp4"], tmp_path / "final.mp4")


def test_cancel_before_ffmpeg(tmp_path: Path):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelled):
        OutputStitcher().stitch(_chunks(tmp_path, 2), tmp_path / "final.mp4", cancel=cancel)


def test_concat_list_escapes_quotes(tmp_path: Path):
    p = tmp_path / "it's.mp4"
    write_concat_list([p], tmp_path / "list.txt")
    text = (tmp_path / "list.txt").read_text(encoding="utf-8")
    assert text.startswith("file '")
    assert "it'\\''s.mp4'" in text


def test_build_concat_command_shape(tmp_path: Path):
    cmd = build_concat_command("ffmpeg", tmp_path / "l.txt", tmp_path / "o.mp4")
    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-f") + 1] == "concat"
    assert cmd[cmd.index("-safe") + 1] == "0"
    assert cmd[-2:] == [str(tmp_path / "o.mp4"), "-y"]


@pytest.fixture
def hanging_ffmpeg(tmp_path: Path):
    """Executable that records its pid and then blocks like a stuck ffmpeg."""
    pid_file = tmp_path / "ffmpeg.pid"
    script = tmp_path / "fake-ffmpeg"
    script.write_text(f"#!/bin/sh\necho $$ > '{pid_file}'\nexec sleep 30\n", encoding="utf-8")
    script.chmod(0o755)
    return script, pid_file


def _assert_killed(pid_file: Path) -> None:
    pid = int(pid_file.read_text(encoding="utf-8").strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.skipif(os.name == "nt", reason="needs a POSIX shell script as ffmpeg")
def test_timeout_kills_ffmpeg(tmp_path: Path, hanging_ffmpeg):
    script, pid_file = hanging_ffmpeg
    chunks = _chunks(tmp_path, 2)
    st = OutputStitcher(StitchSettings(ffmpeg=str(script), copy_timeout_s=1.0), poll_s=0.05)

    started = time.monotonic()
    with pytest.raises(StitchError, match="timed out"):
        st.stitch(chunks, tmp_path / "final.mp4")

    assert time.monotonic() - started < 10.0
    _assert_killed(pid_file)
    assert all(p.exists() for p in chunks)
    assert not (tmp_path / "final_concat.txt").exists()


@pytest.mark.skipif(os.name == "nt", reason="needs a POSIX shell script as ffmpeg")
def test_cancel_kills_running_ffmpeg(tmp_path: Path, hanging_ffmpeg):
    script, pid_file = hanging_ffmpeg
    chunks = _chunks(tmp_path, 2)
    st = OutputStitcher(StitchSettings(ffmpeg=str(script), copy_timeout_s=60.0), poll_s=0.05)
    cancel = threading.Event()
    timer = threading.Timer(1.0, cancel.set)
    timer.start()
    try:
        with pytest.raises(OperationCancelled):
            st.stitch(chunks, tmp_path / "final.mp4", cancel=cancel)
    finally:
        timer.cancel()

    _assert_killed(pid_file)
    assert all(p.exists() for p in chunks)
    assert not (tmp_path / "final.mp4").exists()
