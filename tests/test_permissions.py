"""
Tests for context permission resolution.
"""

from dygram.graph.machine import MachineEdge, MachineNode, MachineSnapshot
from dygram.graph.permissions import (
    PermissionOptions,
    permissions_from_edge,
    readable_fields,
    resolve_context_permissions,
)


def _snapshot(edges, extra_nodes=None):
    nodes = [
        MachineNode(name="Module", type="state"),
        MachineNode(name="Worker", type="task", parent="Module"),
        MachineNode(name="Results", type="context"),
        MachineNode(name="Settings", type="context"),
        MachineNode(name="Next", type="state"),
    ]
    return MachineSnapshot(nodes=nodes + (extra_nodes or []), edges=edges)


# ---- Edge labels ----
def test_label_keywords():
    write = permissions_from_edge(MachineEdge(source="A", target="B", label="write: score, summary"))
    assert write.can_write and not write.can_read
    assert write.fields == ("score", "summary")

    store = permissions_from_edge(MachineEdge(source="A", target="B", label="store"))
    assert store.can_store and not store.can_write

    reads = permissions_from_edge(MachineEdge(source="A", target="B", label="reads"))
    assert reads.can_read and reads.fields is None


def test_field_names_do_not_grant_access():
    permission = permissions_from_edge(
        MachineEdge(source="A", target="B", label="read: offset, dataset")
    )

    assert permission.can_read
    assert not permission.can_write
    assert not permission.can_store
    assert permission.fields == ("offset", "dataset")


def test_keywords_match_whole_words_only():
    permission = permissions_from_edge(MachineEdge(source="A", target="B", label="settings"))
    assert permission.can_read and not permission.can_write


def test_unlabeled_edge_defaults_to_read():
    permission = permissions_from_edge(MachineEdge(source="A", target="B"))
    assert permission.can_read
    assert not permission.can_write
    assert not permission.can_store


# ---- Resolution ----
def test_direct_write_grant_with_fields():
    snapshot = _snapshot([MachineEdge(source="Worker", target="Results", label="write: score")])

    access = resolve_context_permissions("Worker", snapshot)

    assert access["Results"].can_write
    assert access["Results"].allows_field("score")
    assert not access["Results"].allows_field("summary")
    assert access["Results"].inherited_from is None


def test_edges_to_non_context_nodes_grant_nothing():
    snapshot = _snapshot([MachineEdge(source="Worker", target="Next", label="write")])
    assert resolve_context_permissions("Worker", snapshot) == {}


def test_inbound_context_edge_grants_read():
    snapshot = _snapshot([MachineEdge(source="Settings", target="Worker")])

    access = resolve_context_permissions("Worker", snapshot)

    assert access["Settings"].can_read
    assert not access["Settings"].can_write


def test_inbound_edges_can_be_disabled():
    snapshot = _snapshot([MachineEdge(source="Settings", target="Worker")])
    options = PermissionOptions(include_inbound_edges=False)
    assert resolve_context_permissions("Worker", snapshot, options) == {}


def test_inherited_access_is_read_only():
    snapshot = _snapshot([MachineEdge(source="Module", target="Results", label="read, write, store")])

    access = resolve_context_permissions("Worker", snapshot)

    permission = access["Results"]
    assert permission.can_read
    assert not permission.can_write
    assert not permission.can_store
    assert permission.inherited_from == "Module"


def test_write_only_ancestor_grants_nothing():
    snapshot = _snapshot(
        [
            MachineEdge(source="Module", target="Results", label="write"),
            MachineEdge(source="Module", target="Settings", label="store: total"),
        ]
    )

    assert resolve_context_permissions("Worker", snapshot) == {}


def test_explicit_edge_overrides_inherited_entry():
    snapshot = _snapshot(
        [
            MachineEdge(source="Module", target="Results", label="read"),
            MachineEdge(source="Worker", target="Results", label="write: score"),
        ]
    )

    permission = resolve_context_permissions("Worker", snapshot)["Results"]

    assert permission.can_write
    assert permission.inherited_from is None
    assert permission.fields == ("score",)


def test_inheritance_can_be_disabled():
    snapshot = _snapshot([MachineEdge(source="Module", target="Results")])
    options = PermissionOptions(include_inherited=False)
    assert resolve_context_permissions("Worker", snapshot, options) == {}


def test_store_can_be_disabled():
    snapshot = _snapshot([MachineEdge(source="Worker", target="Results", label="store")])
    options = PermissionOptions(include_store=False)
    assert not resolve_context_permissions("Worker", snapshot, options)["Results"].can_store


def test_readable_fields_skips_write_only_grants():
    snapshot = _snapshot(
        [
            MachineEdge(source="Worker", target="Results", label="write"),
            MachineEdge(source="Worker", target="Settings", label="read: threshold"),
        ]
    )

    readable = readable_fields(resolve_context_permissions("Worker", snapshot))

    assert readable == {"Settings": ["threshold"]}
