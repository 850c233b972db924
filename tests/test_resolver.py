import pytest

from pipegraph import GraphResolver
from pipegraph.exceptions import (
    CyclicGraphError,
    ResolverStateError,
    UnknownDependencyError,
    UnpreparedResolverError,
)

# fetch url1 -> A, fetch url2 -> B, parse A -> C, parse B -> D
EXAMPLE = {"A": set(), "B": set(), "C": {"A"}, "D": {"B"}}
DIAMOND = {"a": set(), "b": {"a"}, "c": {"a"}, "d": {"b", "c"}, "e": {"d"}}


def drain(resolver: GraphResolver) -> list[set[str]]:
    """Release and complete tasks wave by wave until nothing is ready."""
    waves = []
    while ready := resolver.get_ready():
        waves.append(ready)
        for key in ready:
            resolver.mark_done(key)

    return waves


def test_example_release_order():
    resolver = GraphResolver().prepare(EXAMPLE)

    assert resolver.get_ready() == {"A", "B"}
    assert resolver.get_ready() == set()

    assert resolver.mark_done("A") == {"C"}
    assert resolver.get_ready() == {"C"}

    assert resolver.mark_failed("B") == {"D"}
    assert resolver.get_ready() == set()
    assert resolver.blocked == {"D"}

    assert not resolver.is_exhausted()
    resolver.mark_done("C")
    assert resolver.is_exhausted()
    assert resolver.done == {"A", "C"}
    assert resolver.failed == {"B"}


def test_release_every_task_exactly_once_after_dependencies():
    resolver = GraphResolver().prepare(DIAMOND)

    waves = drain(resolver)

    assert waves == [{"a"}, {"b", "c"}, {"d"}, {"e"}]
    released = [key for wave in waves for key in wave]
    assert sorted(released) == sorted(DIAMOND)
    for position, wave in enumerate(waves):
        earlier = set().union(*waves[:position])
        for key in wave:
            assert DIAMOND[key] <= earlier
    assert resolver.is_exhausted()


def test_release_waits_for_all_dependencies():
    resolver = GraphResolver().prepare(DIAMOND)
    resolver.mark_done(resolver.get_ready().pop())
    assert resolver.get_ready() == {"b", "c"}

    resolver.mark_done("b")
    assert resolver.get_ready() == set()

    resolver.mark_done("c")
    assert resolver.get_ready() == {"d"}


@pytest.mark.parametrize(
    "graph",
    (
        {"a": {"b"}, "b": {"a"}},
        {"a": {"a"}},
        {"a": set(), "b": {"a", "d"}, "c": {"b"}, "d": {"c"}},
    ),
    ids=("pair", "self", "nested"),
)
def test_cycle_fails_before_release(graph):
    resolver = GraphResolver()

    with pytest.raises(CyclicGraphError) as exc_info:
        resolver.prepare(graph)

    assert exc_info.value.cycles
    assert all(set(cycle) <= graph.keys() for cycle in exc_info.value.cycles)
    with pytest.raises(UnpreparedResolverError):
        resolver.get_ready()


def test_cycles_reported_shortest_first():
    graph = {"a": {"a"}, "b": {"c"}, "c": {"d"}, "d": {"b"}}

    with pytest.raises(CyclicGraphError) as exc_info:
        GraphResolver().prepare(graph)

    assert exc_info.value.cycles[0] == ("a",)
    assert "a" in str(exc_info.value)


def test_unknown_dependency():
    with pytest.raises(UnknownDependencyError) as exc_info:
        GraphResolver().prepare({"a": {"missing"}})

    assert exc_info.value.missing == {"missing"}


def test_failure_blocks_transitive_dependents_only():
    graph = {**DIAMOND, "x": set(), "y": {"x"}}
    resolver = GraphResolver().prepare(graph)

    assert resolver.get_ready() == {"a", "x"}
    assert resolver.mark_failed("a") == {"b", "c", "d", "e"}
    assert resolver.mark_done("x") == {"y"}
    assert resolver.get_ready() == {"y"}

    resolver.mark_done("y")
    assert resolver.is_exhausted()
    assert resolver.blocked == {"b", "c", "d", "e"}


def test_mark_unreleased_or_twice():
    resolver = GraphResolver().prepare(EXAMPLE)

    with pytest.raises(ResolverStateError):
        resolver.mark_done("C")

    resolver.get_ready()
    resolver.mark_done("A")

    with pytest.raises(ResolverStateError):
        resolver.mark_done("A")
    with pytest.raises(ResolverStateError):
        resolver.mark_failed("A")


def test_single_use():
    resolver = GraphResolver().prepare(EXAMPLE)

    with pytest.raises(ResolverStateError):
        resolver.prepare(EXAMPLE)


def test_external_dependencies():
    resolver = GraphResolver().prepare(
        {"p": {"origin"}, "q": {"p", "other"}}, external={"origin", "other", "unused"}
    )

    assert resolver.external == {"origin", "other"}
    assert resolver.references("origin")
    assert "origin" not in resolver
    assert resolver.get_ready() == set()

    assert resolver.mark_done("origin") == {"p"}
    assert resolver.get_ready() == {"p"}
    resolver.mark_done("p")

    assert resolver.mark_failed("other") == {"q"}
    assert resolver.is_exhausted()


def test_from_tasks():
    from pipegraph import Task

    a = Task(kind="fetch", params={"url": "url1"})
    c = Task(kind="parse", params={"url": "url1"}, upstream=[a])

    resolver = GraphResolver.from_tasks([a, c])

    assert resolver.keys == {a.key, c.key}
    assert resolver.get_ready() == {a.key}


def test_topology():
    resolver = GraphResolver().prepare(DIAMOND)
    topology = resolver.topology()

    assert topology.order[0] == "a"
    assert topology.order[-1] == "e"
    assert "a" in str(topology)

    with pytest.raises(UnpreparedResolverError):
        GraphResolver().topology()
