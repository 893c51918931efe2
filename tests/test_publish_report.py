from datetime import UTC, datetime, timedelta

import pytest

from humgen.flow.node import TaskState
from humgen.flow.publish import Publisher
from humgen.flow.report import RunReport
from humgen.flow.scheduler import RunSummary, TaskEvent


def _event(
    tmp_path, name, key, state=TaskState.SUCCEEDED, category="analysis", **kw
):
    stem = key or "all"
    artifact = tmp_path.joinpath("work", name, stem, f"{stem}.{name}.txt")
    artifact.parent.mkdir(parents=True, exist_ok=True)
    artifact.write_text(f"{name}\n", encoding="utf-8")
    start = datetime(2026, 1, 1, tzinfo=UTC)
    return TaskEvent(
        node_name=name,
        key=key,
        state=state,
        started_at=start,
        finished_at=start + timedelta(minutes=3),
        artifacts=(artifact,),
        publish_category=category,
        **kw,
    )


def test_publisher_copies_succeeded_artifacts(tmp_path):
    publisher = Publisher(tmp_path.joinpath("out"))
    publisher(_event(tmp_path, "MergeVariants", "S1"))
    dest = tmp_path.joinpath("out", "analysis", "S1", "S1.MergeVariants.txt")
    assert dest.read_text(encoding="utf-8") == "MergeVariants\n"
    publisher(_event(tmp_path, "SummarizeQcWithMultiqc", None, category="qc"))
    assert tmp_path.joinpath(
        "out", "qc", "all", "all.SummarizeQcWithMultiqc.txt"
    ).is_file()
    assert len(publisher.published) == 2


def test_publisher_ignores_failed_and_unpublished_events(tmp_path):
    publisher = Publisher(tmp_path.joinpath("out"))
    publisher(_event(tmp_path, "AlignReads", "S1", state=TaskState.FAILED))
    publisher(_event(tmp_path, "MarkDuplicates", "S1", category=None))
    assert publisher.published == []
    assert not tmp_path.joinpath("out").exists()
    with pytest.raises(ValueError):
        publisher(_event(tmp_path, "AlignReads", "S1", category="scratch"))


def test_publisher_is_idempotent(tmp_path):
    publisher = Publisher(tmp_path.joinpath("out"))
    event = _event(tmp_path, "ApplyBqsr", "S2", category="alignments")
    publisher(event)
    dest = publisher.published[0]
    mtime = dest.stat().st_mtime_ns
    publisher(event)
    assert dest.stat().st_mtime_ns == mtime
    assert list(dest.parent.iterdir()) == [dest]


def test_publisher_replaces_outdated_copies(tmp_path):
    publisher = Publisher(tmp_path.joinpath("out"))
    event = _event(tmp_path, "MergeVariants", "S1")
    publisher(event)
    event.artifacts[0].write_text("MergeVariants rerun\n", encoding="utf-8")
    publisher(event)
    dest = tmp_path.joinpath("out", "analysis", "S1", "S1.MergeVariants.txt")
    assert dest.read_text(encoding="utf-8") == "MergeVariants rerun\n"
    assert list(dest.parent.iterdir()) == [dest]


def test_run_report(tmp_path):
    report = RunReport()
    report(_event(tmp_path, "AlignReads", "S1"))
    report(_event(tmp_path, "AlignReads", "S2"))
    report(
        _event(
            tmp_path,
            "MergeVariants",
            "S2",
            state=TaskState.FAILED,
            error="MergeVariants[S2] exited with status 1",
        )
    )
    report(_event(tmp_path, "MergeVariants", "S1", cached=True))
    timing = {t["stage"]: t for t in report.stage_timing()}
    assert timing["AlignReads"]["n"] == 2
    assert timing["AlignReads"]["total"] == timedelta(minutes=6)
    assert timing["MergeVariants"]["n"] == 1
    summary = RunSummary(skipped={"S2": ["AnnotateVariants"]}, n_executed=3)
    path = report.write(summary, tmp_path.joinpath("humgen.summary.txt"))
    text = path.read_text(encoding="utf-8")
    assert "status:   SUCCESS" in text
    assert "executed: 3" in text
    assert "S2\tMergeVariants\tMergeVariants[S2] exited with status 1" in text
    assert "AnnotateVariants" in text
