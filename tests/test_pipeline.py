"""Tests for the staged conversion pipeline."""
import asyncio

import pytest

from conftest import AUDIVERIS, MSCORE, FakeRunner
from sheet_service.conversion.errors import PipelineTimeout, StageFailed
from sheet_service.conversion.pipeline import (
    ARTIFACT_MARKER,
    ScorePipeline,
    recognition_export,
    strip_marker,
)


@pytest.fixture
def job_dir(tmp_path):
    d = tmp_path / "job"
    d.mkdir()
    (d / "input.png").write_bytes(b"\x89PNG fake")
    return d


def _pipeline(runner, timeout_sec=5.0):
    return ScorePipeline(runner, audiveris_bin=AUDIVERIS, mscore_bin=MSCORE, timeout_sec=timeout_sec)


def test_recognition_export_path():
    assert str(recognition_export("input.png")) in ("input/input.mxl", "input\\input.mxl")


def test_convert_runs_stages_in_order(job_dir):
    runner = FakeRunner()

    asyncio.run(_pipeline(runner).convert(job_dir, "input.png"))

    assert runner.stages() == ["recognition", "interchange", "package"]
    recognition, interchange, package = runner.calls
    assert recognition[2] == [
        AUDIVERIS, "-batch", "-export", "-output", str(job_dir), str(job_dir / "input.png"),
    ]
    assert interchange[1] == job_dir
    assert interchange[2][:3] == [MSCORE, "-o", "output.xml"]
    assert package[1] == job_dir
    assert package[2] == [MSCORE, "-o", "output.mxl", "output.xml"]


def test_convert_strips_audiveris_marker(job_dir):
    asyncio.run(_pipeline(FakeRunner()).convert(job_dir, "input.png"))

    xml = (job_dir / "output.xml").read_bytes()
    assert ARTIFACT_MARKER not in xml
    assert b"<movement-title></movement-title>" in xml
    # the package is built from the cleaned document
    assert ARTIFACT_MARKER not in (job_dir / "output.mxl").read_bytes()


def test_recognition_failure_stops_pipeline(job_dir):
    runner = FakeRunner(fail_stage="recognition")

    with pytest.raises(StageFailed) as exc:
        asyncio.run(_pipeline(runner).convert(job_dir, "input.png"))

    assert exc.value.stage == "recognition"
    assert exc.value.returncode == 1
    assert "recognition engine exploded" in str(exc.value)
    assert runner.stages() == ["recognition"]
    assert not (job_dir / "output.xml").exists()
    assert not (job_dir / "output.mxl").exists()


def test_package_failure_removes_partial_outputs(job_dir):
    runner = FakeRunner(fail_stage="package")

    with pytest.raises(StageFailed) as exc:
        asyncio.run(_pipeline(runner).convert(job_dir, "input.png"))

    assert exc.value.stage == "package"
    assert not (job_dir / "output.xml").exists()
    assert not (job_dir / "output.mxl").exists()


def test_missing_output_after_clean_exit_is_a_failure(job_dir):
    runner = FakeRunner(skip_output="interchange")

    with pytest.raises(StageFailed) as exc:
        asyncio.run(_pipeline(runner).convert(job_dir, "input.png"))

    assert exc.value.stage == "interchange"
    assert "output.xml was not produced" in str(exc.value)
    assert runner.stages() == ["recognition", "interchange"]


def test_deadline_is_shared_across_stages(job_dir):
    # each stage alone fits in the deadline, the two together do not
    runner = FakeRunner(delays={"recognition": 0.7, "interchange": 0.7})

    with pytest.raises(PipelineTimeout) as exc:
        asyncio.run(_pipeline(runner, timeout_sec=1.0).convert(job_dir, "input.png"))

    assert exc.value.stage == "interchange"
    assert "timed out" in str(exc.value)
    assert runner.stages() == ["recognition", "interchange"]
    assert not (job_dir / "output.mxl").exists()


def test_strip_marker_leaves_clean_files_alone(tmp_path):
    path = tmp_path / "output.xml"
    path.write_bytes(b"<score-partwise/>")
    before = path.stat().st_mtime_ns

    strip_marker(path)

    assert path.read_bytes() == b"<score-partwise/>"
    assert path.stat().st_mtime_ns == before


def test_strip_marker_removes_every_occurrence(tmp_path):
    path = tmp_path / "output.xml"
    path.write_bytes(b"a" + ARTIFACT_MARKER + b"b" + ARTIFACT_MARKER + b"c")

    strip_marker(path)

    assert path.read_bytes() == b"abc"
