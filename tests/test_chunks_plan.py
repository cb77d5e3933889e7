from pathlib import Path

import pytest

from chunkflow.chunks import ChunkRun, ChunkStatus, ChunkTask, ProgressReporter, plan_chunks


def test_plan_130_by_49() -> None:
    tasks = plan_chunks(130, 49)
    assert [(t.frame_start, t.frame_end) for t in tasks] == [(0, 49), (49, 98), (98, 130)]
    assert [t.number for t in tasks] == [1, 2, 3]


@pytest.mark.parametrize("total,size", [(1, 1), (49, 49), (50, 49), (1000, 7), (3, 10), (0, 5)])
def test_plan_partitions_range_exactly(total: int, size: int) -> None:
    tasks = plan_chunks(total, size)
    assert len(tasks) == -(-total // size)
    covered = []
    for i, t in enumerate(tasks):
        assert t.index == i
        assert 0 < t.frame_count <= size
        assert t.status == ChunkStatus.PENDING
        covered.extend(range(t.frame_start, t.frame_end))
    assert covered == list(range(total))


def test_plan_rejects_bad_sizes() -> None:
    with pytest.raises(ValueError):
        plan_chunks(10, 0)
    with pytest.raises(ValueError):
        plan_chunks(-1, 5)


def test_run_artifacts_skip_failed_chunks() -> None:
    run = ChunkRun(
        tasks=[
            ChunkTask(0, 0, 10, ChunkStatus.SUCCEEDED, artifact_path=Path("a.mp4")),
            ChunkTask(1, 10, 10, ChunkStatus.FAILED, error="boom"),
            ChunkTask(2, 20, 5, ChunkStatus.SUCCEEDED, artifact_path=Path("c.mp4")),
        ]
    )
    assert run.artifacts == [Path("a.mp4"), Path("c.mp4")]
    assert [t.index for t in run.failed] == [1]


def test_progress_reporter_clamps_and_never_decreases() -> None:
    seen = []
    reporter = ProgressReporter(4, lambda pct, msg: seen.append(pct))
    reporter.report(1, 0.5, "")
    reporter.report(0, 0.9, "")  # late event from an earlier chunk
    reporter.report(3, 7.0, "")
    assert seen == [37.5, 37.5, 100.0]


def test_progress_reporter_survives_callback_errors() -> None:
    def broken(pct, msg):
        raise RuntimeError("ui gone")

    reporter = ProgressReporter(2, broken)
    assert reporter.report(1, 1.0, "") == 100.0
