import pytest

from humgen.flow.channel import StreamChannel, ValueChannel
from humgen.flow.combinator import join
from humgen.flow.dag import build_graph
from humgen.flow.errors import (
    ConfigurationError,
    CycleDetected,
    DuplicateProducer,
    UnboundInput,
)


def test_edges_are_inferred_from_channel_identity(file_node):
    reads = StreamChannel("reads")
    genome = ValueChannel("genome")
    ref = ValueChannel("reference")
    trimmed = StreamChannel("trimmed")
    aligned = StreamChannel("aligned")
    prep = file_node(name="prep", inputs=[genome], outputs=[ref])
    trim = file_node(name="trim", inputs=[reads], outputs=[trimmed])
    align = file_node(name="align", inputs=[trimmed, ref], outputs=[aligned])
    graph = build_graph([align, trim, prep], initial_channels=[reads, genome])
    assert graph.upstream("align") == ("trim", "prep")
    assert graph.downstream("trim") == ("align",)
    assert graph.producer(trimmed) is trim
    assert graph.producer(reads) is None
    assert graph.consumers(ref) == [align]
    assert [n.name for n in graph.order] == ["trim", "prep", "align"]
    assert graph.ancestors("align") == {"trim", "prep"}
    assert graph.descendants("prep") == {"align"}
    assert graph.terminal_nodes == [align]
    assert "align" in graph and graph["align"] is align


def test_same_name_is_not_the_same_channel(file_node):
    reads = StreamChannel("reads")
    node = file_node(name="trim", inputs=[StreamChannel("reads")])
    with pytest.raises(UnboundInput) as e:
        build_graph([node], initial_channels=[reads])
    assert e.value.node_name == "trim"
    assert e.value.channel_name == "reads"


def test_cycle_is_detected(file_node):
    a_out = StreamChannel("a")
    b_out = StreamChannel("b")
    reads = StreamChannel("reads")
    a = file_node(name="a", inputs=[reads, b_out], outputs=[a_out])
    b = file_node(name="b", inputs=[a_out], outputs=[b_out])
    with pytest.raises(CycleDetected) as e:
        build_graph([a, b], initial_channels=[reads])
    assert set(e.value.path) == {"a", "b"}


def test_duplicate_producer(file_node):
    reads = StreamChannel("reads")
    out = StreamChannel("out")
    nodes = [
        file_node(name="a", inputs=[reads], outputs=[out]),
        file_node(name="b", inputs=[reads], outputs=[out]),
    ]
    with pytest.raises(DuplicateProducer):
        build_graph(nodes, initial_channels=[reads])
    with pytest.raises(DuplicateProducer):
        build_graph(
            [file_node(name="a", inputs=[reads], outputs=[reads])],
            initial_channels=[reads],
        )


def test_invalid_declarations(file_node):
    reads = StreamChannel("reads")
    with pytest.raises(ConfigurationError):
        build_graph(
            [file_node(name="a", inputs=[reads]), file_node(name="a", inputs=[reads])],
            initial_channels=[reads],
        )
    with pytest.raises(ConfigurationError):
        build_graph([file_node(name="orphan")], initial_channels=[reads])


def test_every_node_is_reachable_from_an_initial_channel(file_node):
    reads = StreamChannel("reads")
    genome = ValueChannel("genome")
    a_out = StreamChannel("a")
    b_out = StreamChannel("b")
    joined = join(a_out, b_out, name="ab")
    nodes = [
        file_node(name="a", inputs=[reads], outputs=[a_out]),
        file_node(name="b", inputs=[reads, genome], outputs=[b_out]),
        joined,
        file_node(name="c", inputs=[joined.outputs[0]]),
    ]
    graph = build_graph(nodes, initial_channels=[reads, genome])
    roots = {n.name for n in graph.nodes if not graph.upstream(n.name)}
    for n in graph.nodes:
        assert n.name in roots or graph.ancestors(n.name) & roots
    seen = set()
    for n in graph.order:
        assert set(graph.upstream(n.name)) <= seen
        seen.add(n.name)
