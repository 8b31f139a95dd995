import dataclasses
from pathlib import Path

import pytest
from mutagen.id3 import APIC, ID3, TIT2

from mp3cd.artwork import mp3_has_art
from mp3cd.encoder import (
    EncodeRequest,
    FFmpegEncoder,
    FFmpegProgressDecoder,
    build_mp3_cmd,
    is_temp_output,
)
from mp3cd.models import Strategy
from mp3cd.process import ProcessSupervisor
from fakes import FakeProc, FakeSpawner


def _value_after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


def test_build_mp3_cmd_basics():
    cmd = build_mp3_cmd(Path("/in/a.flac"), Path("/out/a.mp3.part-1-x"), bitrate_kbps=256)
    assert cmd[0] == "ffmpeg"
    assert _value_after(cmd, "-i") == "/in/a.flac"
    assert _value_after(cmd, "-c:a") == "libmp3lame"
    assert _value_after(cmd, "-b:a") == "256k"
    assert _value_after(cmd, "-id3v2_version") == "3"
    assert _value_after(cmd, "-progress") == "pipe:1"
    assert _value_after(cmd, "-f") == "mp3"
    assert "-vn" in cmd
    assert cmd[-1] == "/out/a.mp3.part-1-x"


def test_build_mp3_cmd_with_cover_file():
    cmd = build_mp3_cmd(
        Path("/in/a.flac"),
        Path("/out/a.tmp"),
        bitrate_kbps=192,
        embed_art=True,
        artwork_path=Path("/in/cover.jpg"),
    )
    inputs = [cmd[i + 1] for i, p in enumerate(cmd) if p == "-i"]
    assert inputs == ["/in/a.flac", "/in/cover.jpg"]
    assert "1:v:0" in cmd
    assert "-vn" not in cmd
    assert "comment=Cover (front)" in cmd


def test_build_mp3_cmd_keeps_source_picture_without_cover_file():
    cmd = build_mp3_cmd(Path("/in/a.m4a"), Path("/out/a.tmp"), bitrate_kbps=192, embed_art=True)
    assert "0:v:0?" in cmd
    assert "-vn" not in cmd


class TestProgressDecoder:
    def test_out_time_lines(self):
        d = FFmpegProgressDecoder(200.0)
        assert d.feed("frame=1") is None
        assert d.feed("out_time_us=50000000") == pytest.approx(25.0)
        assert d.feed("out_time_ms=100000000") == pytest.approx(50.0)
        assert d.feed("progress=end") == 100.0

    def test_classic_stats_line(self):
        d = FFmpegProgressDecoder(120.0)
        assert d.feed("size= 512kB time=00:01:00.00 bitrate= 128.0kbits/s") == pytest.approx(50.0)

    def test_monotonic_and_clamped(self):
        d = FFmpegProgressDecoder(10.0)
        assert d.feed("out_time_us=8000000") == pytest.approx(80.0)
        assert d.feed("out_time_us=7000000") == pytest.approx(80.0)
        assert d.feed("out_time_us=99000000") == 100.0

    def test_unknown_duration_is_indeterminate(self):
        d = FFmpegProgressDecoder(0.0)
        assert d.feed("out_time_us=1000000") is None
        assert d.feed("progress=end") is None

    def test_garbage_values_ignored(self):
        d = FFmpegProgressDecoder(10.0)
        assert d.feed("out_time_us=N/A") is None


def _request(tmp_path, strategy=Strategy.CONVERT_AT_TARGET_BITRATE, kbps=192):
    src = tmp_path / "in" / "a.flac"
    src.parent.mkdir(exist_ok=True)
    src.write_bytes(b"source-bytes")
    return EncodeRequest(
        input_path=src,
        strategy=strategy,
        output_path=tmp_path / "out" / "a.mp3",
        target_bitrate=kbps,
        duration_s=100.0,
        label="a",
    )


def _writing_proc(cmd, lines, returncode=0):
    """A fake ffmpeg that creates its output file."""
    if returncode == 0:
        Path(cmd[-1]).write_bytes(b"mp3-bytes")
    return FakeProc(lines, returncode=returncode)


def test_encode_success_reports_progress_and_temp_output(tmp_path):
    spawner = FakeSpawner(
        lambda cmd: _writing_proc(cmd, ["out_time_us=25000000", "out_time_us=100000000", "progress=end"])
    )
    encoder = FFmpegEncoder(ProcessSupervisor(spawner))
    seen = []
    result = encoder.encode(_request(tmp_path), on_progress=seen.append)

    assert result.ok
    assert is_temp_output(result.output_tmp)
    assert result.output_tmp.read_bytes() == b"mp3-bytes"
    assert seen == [pytest.approx(25.0), 100.0, 100.0]
    assert _value_after(spawner.calls[0], "-b:a") == "192k"
    # final path is left for the caller to finalize
    assert not (tmp_path / "out" / "a.mp3").exists()


def test_encode_failure_discards_temp_and_keeps_diagnostics(tmp_path):
    def factory(cmd):
        Path(cmd[-1]).write_bytes(b"half")
        return FakeProc(["Invalid data found when processing input"], returncode=1)

    encoder = FFmpegEncoder(ProcessSupervisor(FakeSpawner(factory)))
    result = encoder.encode(_request(tmp_path))

    assert not result.ok
    assert result.returncode == 1
    assert "Invalid data" in result.error
    assert list((tmp_path / "out").iterdir()) == []


def test_encode_missing_binary(tmp_path):
    def missing(cmd):
        raise FileNotFoundError("ffmpeg")

    result = FFmpegEncoder(ProcessSupervisor(missing)).encode(_request(tmp_path))
    assert result.returncode == 127
    assert not result.ok


def test_encode_cancelled_leaves_nothing(tmp_path):
    procs = []

    def factory(cmd):
        Path(cmd[-1]).write_bytes(b"partial")
        proc = FakeProc(["out_time_us=1000000"], block=True)
        procs.append(proc)
        return proc

    encoder = FFmpegEncoder(ProcessSupervisor(FakeSpawner(factory), grace_s=5))
    result = encoder.encode(_request(tmp_path), on_spawn=lambda handle: handle.cancel())

    assert result.cancelled
    assert not result.ok
    assert procs[0].terminated
    assert list((tmp_path / "out").iterdir()) == []


def test_copy_is_byte_exact(tmp_path):
    spawner = FakeSpawner(lambda cmd: pytest.fail("copy must not spawn"))
    encoder = FFmpegEncoder(ProcessSupervisor(spawner))
    seen = []
    result = encoder.encode(_request(tmp_path, Strategy.COPY, kbps=None), on_progress=seen.append)

    assert result.ok
    assert result.output_tmp.read_bytes() == b"source-bytes"
    assert seen == [100.0]


def test_command_requires_bitrate(tmp_path):
    encoder = FFmpegEncoder(ProcessSupervisor(FakeSpawner(lambda cmd: FakeProc())))
    with pytest.raises(ValueError):
        encoder.command_for(_request(tmp_path, kbps=None), tmp_path / "x")


def _tagged_mp3(path, audio):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"")
    tags = ID3()
    tags.add(TIT2(encoding=3, text="Song"))
    tags.add(APIC(encoding=3, mime="image/jpeg", type=3, desc="Cover", data=b"\xff\xd8\xff" + b"\x00" * 20000))
    tags.save(str(path), v2_version=3)
    with path.open("ab") as f:
        f.write(audio)
    return path


def test_copy_can_strip_artwork_keeping_audio(tmp_path):
    audio = b"\xff\xfb\x90\x00" * 512
    src = _tagged_mp3(tmp_path / "in" / "a.mp3", audio)
    encoder = FFmpegEncoder(ProcessSupervisor(FakeSpawner(lambda cmd: pytest.fail("copy must not spawn"))))
    request = EncodeRequest(
        input_path=src,
        strategy=Strategy.COPY,
        output_path=tmp_path / "out" / "a.mp3",
        strip_art=True,
    )
    result = encoder.encode(request)

    assert result.ok
    out = result.output_tmp
    assert mp3_has_art(src)
    assert not mp3_has_art(out)
    assert out.stat().st_size < src.stat().st_size - 20000
    assert out.read_bytes().endswith(audio)
    assert str(ID3(str(out))["TIT2"]) == "Song"


def test_strip_art_leaves_untagged_copy_alone(tmp_path):
    encoder = FFmpegEncoder(ProcessSupervisor(FakeSpawner(lambda cmd: FakeProc())))
    request = _request(tmp_path, Strategy.COPY, kbps=None)
    result = encoder.encode(dataclasses.replace(request, strip_art=True))
    assert result.ok
    assert result.output_tmp.read_bytes() == b"source-bytes"
