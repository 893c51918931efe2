import os
from pathlib import Path

import pytest

from humgen.flow.cache import TaskCache
from humgen.flow.channel import StreamChannel
from humgen.flow.node import TaskContext, TaskInstance


@pytest.fixture
def instance(tmp_path, file_node):
    src = tmp_path.joinpath("S1.in.txt")
    src.write_text("input\n", encoding="utf-8")
    node = file_node(
        name="step", inputs=[StreamChannel("in")], outputs=[StreamChannel("out")]
    )
    inst = TaskInstance(node=node, key="S1", seq=0)
    inst.fill(0, ("S1", src))
    inst.context = TaskContext(
        node_name="step",
        key="S1",
        inputs=tuple(inst.slots),
        work_dir=tmp_path.joinpath("work", "step", "S1"),
        resources=node.resources,
    )
    return inst


def _complete(cache, inst):
    artifact = Path(inst.node.output(inst.context)[0].path)
    artifact.parent.mkdir(parents=True, exist_ok=True)
    artifact.write_text("output\n", encoding="utf-8")
    inst.fingerprint = cache.fingerprint(inst)
    inst.outputs = inst.node.emit(inst.context)
    assert cache.claim(inst.fingerprint)
    return cache.record(inst, artifacts=[artifact]), artifact


def test_fingerprint_is_stable_and_tracks_inputs(tmp_path, instance):
    cache = TaskCache(tmp_path.joinpath("cache"))
    fp = cache.fingerprint(instance)
    assert fp == cache.fingerprint(instance)
    instance.slots[0][1].write_text("changed input\n", encoding="utf-8")
    assert cache.fingerprint(instance) != fp


def test_cache_modes(tmp_path, instance):
    src = instance.slots[0][1]
    caches = {m: TaskCache(tmp_path.joinpath(m), mode=m) for m in ["lenient", "deep"]}
    before = {m: c.fingerprint(instance) for m, c in caches.items()}
    st = src.stat()
    os.utime(src, ns=(st.st_atime_ns, st.st_mtime_ns + 10**9))
    assert caches["lenient"].fingerprint(instance) == before["lenient"]
    assert caches["deep"].fingerprint(instance) == before["deep"]
    src.write_text("INPUT\n", encoding="utf-8")
    assert caches["lenient"].fingerprint(instance) == before["lenient"]
    assert caches["deep"].fingerprint(instance) != before["deep"]
    with pytest.raises(ValueError):
        TaskCache(tmp_path, mode="fast")


def test_record_then_hit(tmp_path, instance):
    cache = TaskCache(tmp_path.joinpath("cache"), epoch=3)
    path, artifact = _complete(cache, instance)
    assert path.parent.parent.name == "epoch-3"
    entry = cache.lookup(instance.fingerprint)
    assert entry["node"] == "step"
    assert entry["key"] == "S1"
    assert entry["outputs"] == [("S1", artifact)]
    assert [p for p, _ in cache.entries()] == [path]


def test_miss_conditions(tmp_path, instance):
    cache_dir = tmp_path.joinpath("cache")
    cache = TaskCache(cache_dir)
    path, artifact = _complete(cache, instance)
    fp = instance.fingerprint
    assert TaskCache(cache_dir, resume=False).lookup(fp) is None
    assert TaskCache(cache_dir, epoch=2).lookup(fp) is None
    artifact.write_text("truncated", encoding="utf-8")
    assert cache.lookup(fp) is None
    artifact.unlink()
    assert cache.lookup(fp) is None
    path.write_text("{not: [yaml", encoding="utf-8")
    assert cache.lookup(fp) is None


def test_claim_is_exclusive(tmp_path, instance):
    cache = TaskCache(tmp_path.joinpath("cache"))
    instance.fingerprint = cache.fingerprint(instance)
    assert cache.record(instance, artifacts=[]) is None
    assert cache.claim(instance.fingerprint)
    assert not cache.claim(instance.fingerprint)


def test_invalidate(tmp_path, instance):
    cache = TaskCache(tmp_path.joinpath("cache"))
    path, _ = _complete(cache, instance)
    assert cache.invalidate("step", key="S2") == []
    assert cache.invalidate("step", key="S1") == [path]
    assert not path.exists()
    assert cache.lookup(instance.fingerprint) is None
