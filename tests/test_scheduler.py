import threading
from pathlib import Path

import luigi
import pytest

from humgen.flow.backend import ShellBackend
from humgen.flow.cache import TaskCache
from humgen.flow.channel import StreamChannel, ValueChannel
from humgen.flow.combinator import join
from humgen.flow.dag import build_graph
from humgen.flow.errors import (
    ArityMismatch,
    JoinStarvation,
    MissingOutput,
    ResourceExceeded,
    TaskCancelled,
    TaskExecutionError,
)
from humgen.flow.ledger import ResourceLedger
from humgen.flow.node import ResourceProfile, TaskNode, TaskState
from humgen.flow.scheduler import FailurePolicy, Scheduler


def _linear_graph(file_node, samples=("S1", "S2")):
    reads = StreamChannel("reads", arity=2)
    a_out = StreamChannel("a")
    nodes = [
        file_node(name="a", inputs=[reads], outputs=[a_out]),
        file_node(name="b", inputs=[a_out], outputs=[StreamChannel("b")]),
    ]
    for s in samples:
        reads.emit((s, s))
    reads.close()
    return build_graph(nodes, initial_channels=[reads])


def _scheduler(graph, backend, tmp_path, n_cpu=4, **kwargs):
    return Scheduler(
        graph=graph,
        backend=backend,
        ledger=ResourceLedger(n_cpu=n_cpu, memory_mb=4096),
        work_dir_path=tmp_path.joinpath("work"),
        **kwargs,
    )


def test_every_instance_succeeds(tmp_path, file_node, fake_backend):
    backend = fake_backend()
    summary = _scheduler(_linear_graph(file_node), backend, tmp_path).run()
    assert summary.succeeded and summary.exit_code == 0
    assert sorted(backend.executed) == [
        ("a", "S1"),
        ("a", "S2"),
        ("b", "S1"),
        ("b", "S2"),
    ]
    assert summary.n_executed == 4
    assert summary.status_table() == {
        "S1": {"a": "succeeded", "b": "succeeded"},
        "S2": {"a": "succeeded", "b": "succeeded"},
    }
    b = summary.get("b", "S1")
    assert b.started_at <= b.finished_at
    artifact = tmp_path.joinpath("work", "b", "S1", "S1.txt")
    assert artifact.read_text() == "run:b[S1]\n"


def test_ties_are_broken_by_declaration_then_arrival(
    tmp_path, file_node, fake_backend
):
    backend = fake_backend()
    _scheduler(_linear_graph(file_node), backend, tmp_path, n_cpu=1).run()
    assert backend.executed == [("a", "S1"), ("a", "S2"), ("b", "S1"), ("b", "S2")]


def test_value_channel_feeds_every_sample(tmp_path, file_node, fake_backend):
    reads = StreamChannel("reads", arity=2)
    genome = ValueChannel("genome", value="GRCh38")
    reference = ValueChannel("reference")
    prep = file_node(name="prep", inputs=[genome], outputs=[reference])
    call = file_node(
        name="call", inputs=[reads, reference], outputs=[StreamChannel("vcf")]
    )
    for s in ["S1", "S2"]:
        reads.emit((s, s))
    reads.close()
    graph = build_graph([call, prep], initial_channels=[reads, genome])
    backend = fake_backend()
    summary = _scheduler(graph, backend, tmp_path).run()
    assert summary.succeeded
    assert backend.executed[0] == ("prep", None)
    assert backend.executed.count(("prep", None)) == 1
    staged = tmp_path.joinpath("work", "prep", "global", "all.txt")
    assert summary.get("prep").outputs == [(staged,)]
    assert {i.key for i in summary.instances if i.node is call} == {"S1", "S2"}


def test_fail_fast_stops_dispatching(tmp_path, file_node, fake_backend):
    backend = fake_backend(fail=[("a", "S1")])
    summary = _scheduler(_linear_graph(file_node), backend, tmp_path, n_cpu=1).run()
    assert backend.executed == [("a", "S1")]
    assert summary.aborted
    assert summary.exit_code == 1
    assert summary.failures == [("S1", "a")]
    assert summary.get("a", "S2").state is TaskState.READY
    assert summary.starved == []


def test_fail_fast_cancels_running_instances(tmp_path, file_node, fake_backend):
    backend = fake_backend(fail=[("a", "S1")], delays={("a", "S2"): 0.5})
    summary = _scheduler(_linear_graph(file_node), backend, tmp_path, n_cpu=2).run()
    assert backend.cancelled == ["a[S2]"]
    cancelled = summary.get("a", "S2")
    assert cancelled.state is TaskState.FAILED
    assert isinstance(cancelled.error, TaskCancelled)
    assert ("b", "S2") not in backend.executed


def test_continue_on_error_isolates_samples(tmp_path, file_node, fake_backend):
    backend = fake_backend(fail=[("a", "S1")])
    summary = _scheduler(
        _linear_graph(file_node),
        backend,
        tmp_path,
        policy=FailurePolicy.CONTINUE_ON_ERROR,
    ).run()
    assert not summary.aborted
    assert summary.exit_code == 1
    assert summary.failures == [("S1", "a")]
    assert summary.get("b", "S2").state is TaskState.SUCCEEDED
    assert summary.skipped == {"S1": ["b"]}
    assert summary.status_table()["S1"] == {"a": "failed", "b": "skipped"}
    assert summary.starved == []


def test_missing_output_fails_the_instance(tmp_path, file_node, fake_backend):
    backend = fake_backend(missing=[("a", "S2")])
    summary = _scheduler(
        _linear_graph(file_node),
        backend,
        tmp_path,
        policy=FailurePolicy.CONTINUE_ON_ERROR,
    ).run()
    failed = summary.get("a", "S2")
    assert failed.state is TaskState.FAILED
    assert isinstance(failed.error, MissingOutput)
    assert summary.get("b", "S1").state is TaskState.SUCCEEDED


def test_profile_exceeding_capacity_aborts_before_dispatch(
    tmp_path, file_node, fake_backend
):
    reads = StreamChannel("reads")
    heavy = file_node(
        name="heavy", inputs=[reads], resources=ResourceProfile(n_cpu=8, memory_mb=1)
    )
    backend = fake_backend()
    with pytest.raises(ResourceExceeded, match="heavy"):
        _scheduler(build_graph([heavy], initial_channels=[reads]), backend, tmp_path)
    assert backend.executed == []


def test_scheduler_uses_the_given_ledger(tmp_path, file_node, fake_backend):
    ledger = ResourceLedger(n_cpu=2, memory_mb=512)
    scheduler = Scheduler(
        graph=_linear_graph(file_node),
        backend=fake_backend(),
        ledger=ledger,
        work_dir_path=tmp_path,
    )
    assert not ledger
    assert scheduler.ledger is ledger
    assert scheduler.run().succeeded
    assert ledger.peak_cpu == 2


def test_ledger_bounds_concurrency(tmp_path, file_node, fake_backend):
    reads = StreamChannel("reads", arity=2)
    nodes = [
        file_node(
            name="heavy",
            inputs=[reads],
            outputs=[StreamChannel("h")],
            resources=ResourceProfile(n_cpu=3, memory_mb=1024),
        ),
        file_node(
            name="light",
            inputs=[reads],
            outputs=[StreamChannel("l")],
            resources=ResourceProfile(n_cpu=1, memory_mb=3072),
        ),
    ]
    for i in range(6):
        reads.emit((f"S{i}", i))
    reads.close()
    ledger = ResourceLedger(n_cpu=4, memory_mb=4096)
    scheduler = Scheduler(
        graph=build_graph(nodes, initial_channels=[reads]),
        backend=fake_backend(delay=0.01),
        ledger=ledger,
        work_dir_path=tmp_path,
    )
    summary = scheduler.run()
    assert summary.succeeded
    assert scheduler.ledger is ledger
    assert 3 <= ledger.peak_cpu <= 4
    assert ledger.peak_memory_mb <= 4096
    assert ledger.reserved == (0, 0)


def test_rerun_with_cache_executes_nothing(tmp_path, file_node, fake_backend):
    cache_dir = tmp_path.joinpath("cache")
    first = fake_backend()
    _scheduler(
        _linear_graph(file_node), first, tmp_path, cache=TaskCache(cache_dir)
    ).run()
    artifact = tmp_path.joinpath("work", "b", "S2", "S2.txt")
    content = artifact.read_text()
    second = fake_backend(label="second")
    summary = _scheduler(
        _linear_graph(file_node), second, tmp_path, cache=TaskCache(cache_dir)
    ).run()
    assert second.executed == []
    assert summary.n_cached == 4
    assert summary.succeeded
    assert all(i.cached for i in summary.instances)
    assert artifact.read_text() == content


def test_cache_without_resume_reexecutes(tmp_path, file_node, fake_backend):
    cache_dir = tmp_path.joinpath("cache")
    _scheduler(
        _linear_graph(file_node), fake_backend(), tmp_path, cache=TaskCache(cache_dir)
    ).run()
    backend = fake_backend()
    _scheduler(
        _linear_graph(file_node),
        backend,
        tmp_path,
        cache=TaskCache(cache_dir, resume=False),
    ).run()
    assert len(backend.executed) == 4


def test_join_starvation_is_a_warning(tmp_path, file_node, fake_backend):
    reads = StreamChannel("reads", arity=2)
    extra = StreamChannel("extra", arity=2)
    a_out = StreamChannel("a")
    joined = join(a_out, extra, name="a.extra")
    nodes = [
        file_node(name="a", inputs=[reads], outputs=[a_out]),
        joined,
        file_node(name="c", inputs=[joined.outputs[0]]),
        file_node(name="d", inputs=[a_out, extra]),
    ]
    for s in ["S1", "S2"]:
        reads.emit((s, s))
    extra.emit(("S1", "x"))
    reads.close()
    extra.close()
    backend = fake_backend()
    with pytest.warns(JoinStarvation):
        summary = _scheduler(
            build_graph(nodes, initial_channels=[reads, extra]), backend, tmp_path
        ).run()
    assert summary.exit_code == 0
    assert sorted((w.node_name, w.key) for w in summary.starved) == [
        ("a.extra", "S2"),
        ("d", "S2"),
    ]
    assert ("c", "S1") in backend.executed
    assert ("c", "S2") not in backend.executed


def test_protocol_error_aborts_the_run(tmp_path, file_node, fake_backend):
    reads = StreamChannel("reads", arity=2)
    node = file_node(name="a", inputs=[reads], outputs=[StreamChannel("a", arity=5)])
    reads.emit(("S1", "x"))
    reads.close()
    with pytest.raises(ArityMismatch):
        _scheduler(
            build_graph([node], initial_channels=[reads]), fake_backend(), tmp_path
        ).run()


def test_listeners_receive_terminal_events(tmp_path, file_node, fake_backend):
    events = []
    _scheduler(
        _linear_graph(file_node),
        fake_backend(fail=[("b", "S2")]),
        tmp_path,
        policy=FailurePolicy.CONTINUE_ON_ERROR,
        listeners=[events.append],
    ).run()
    assert len(events) == 4
    failed = [e for e in events if e.state is TaskState.FAILED]
    assert [(e.node_name, e.key) for e in failed] == [("b", "S2")]
    assert "exited with status 1" in failed[0].error
    for e in events:
        assert e.elapsed is not None
        assert e.artifacts == (
            Path(tmp_path, "work", e.node_name, e.key, f"{e.key}.txt"),
        )


class BrokenBodyNode(TaskNode):
    resources = ResourceProfile(n_cpu=1, memory_mb=256)

    def output(self, ctx):
        return [luigi.LocalTarget(ctx.work_dir.joinpath(f"{ctx.key}.txt"))]

    def run(self, ctx):
        if ctx.key == self.params.get("broken_key"):
            raise ValueError("no command for this sample")
        return [f"touch {self.output(ctx)[0].path}"]


class BrokenEmitNode(BrokenBodyNode):
    def run(self, ctx):
        return [f"touch {self.output(ctx)[0].path}"]

    def emit(self, ctx):
        if ctx.key == self.params.get("broken_key"):
            raise KeyError(ctx.key)
        return super().emit(ctx)


@pytest.mark.parametrize("node_cls", [BrokenBodyNode, BrokenEmitNode])
def test_node_errors_fail_only_their_sample(tmp_path, fake_backend, node_cls):
    reads = StreamChannel("reads", arity=2)
    node = node_cls(
        name="a", inputs=[reads], outputs=[StreamChannel("a")], broken_key="S1"
    )
    for s in ["S1", "S2"]:
        reads.emit((s, s))
    reads.close()
    summary = _scheduler(
        build_graph([node], initial_channels=[reads]),
        fake_backend(),
        tmp_path,
        policy=FailurePolicy.CONTINUE_ON_ERROR,
    ).run()
    failed = summary.get("a", "S1")
    assert failed.state is TaskState.FAILED
    assert isinstance(failed.error, TaskExecutionError)
    assert failed.error.key == "S1"
    assert summary.get("a", "S2").state is TaskState.SUCCEEDED
    assert summary.failures == [("S1", "a")]


class CountingCache(TaskCache):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []

    def fingerprint(self, instance):
        self.calls.append((instance.id, threading.current_thread().name))
        return super().fingerprint(instance)


def test_each_instance_is_fingerprinted_once(tmp_path, file_node, fake_backend):
    cache = CountingCache(tmp_path.joinpath("cache"), mode="deep")
    summary = _scheduler(
        _linear_graph(file_node, samples=("S1", "S2", "S3", "S4")),
        fake_backend(delay=0.01),
        tmp_path,
        n_cpu=1,
        cache=cache,
    ).run()
    assert summary.succeeded
    ids = [i for i, _ in cache.calls]
    assert sorted(ids) == sorted(i.id for i in summary.instances)
    assert len(ids) == len(set(ids)) == 8
    assert all(t.startswith("humgen-cache") for _, t in cache.calls)


class PrintfNode(TaskNode):
    resources = ResourceProfile(n_cpu=1, memory_mb=256)

    def output(self, ctx):
        return [luigi.LocalTarget(ctx.work_dir.joinpath(f"{ctx.key}.txt"))]

    def run(self, ctx):
        return [f"test {ctx.key} != S1 && printf ok > {self.output(ctx)[0].path}"]


def test_shell_failure_is_isolated_per_sample(tmp_path):
    reads = StreamChannel("reads", arity=2)
    node = PrintfNode(name="p", inputs=[reads], outputs=[StreamChannel("p")])
    for s in ["S1", "S2"]:
        reads.emit((s, s))
    reads.close()
    summary = _scheduler(
        build_graph([node], initial_channels=[reads]),
        ShellBackend(log_dir_path=tmp_path.joinpath("log"), print_command=False),
        tmp_path,
        policy=FailurePolicy.CONTINUE_ON_ERROR,
    ).run()
    assert summary.exit_code == 1
    failed = summary.get("p", "S1")
    assert failed.state is TaskState.FAILED
    assert failed.error.exit_code == 1
    assert "p[S1] exited with status 1" in str(failed.error)
    assert summary.get("p", "S2").state is TaskState.SUCCEEDED
    assert tmp_path.joinpath("work", "p", "S2", "S2.txt").read_text() == "ok"
