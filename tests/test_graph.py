import numpy as np
import pytest

from errors import GraphEmptyError
from harmonize import prune_graph
from utils import CameraIndex, OverlapGraph, UnionFind, filter_poor_support, pair_key


def make_matches(pairs, count=150):
    return {pair_key(a, b): {"SIFT": np.zeros((count, 2), dtype=np.int64)} for a, b in pairs}


def test_union_find_merges_sets():
    uf = UnionFind(range(5))
    uf.union(0, 1)
    uf.union(3, 4)
    uf.union(1, 4)
    assert uf.find(0) == uf.find(3)
    assert uf.find(2) != uf.find(0)


def test_pair_key_is_canonical():
    assert pair_key(7, 3) == (3, 7)
    assert pair_key(3, 7) == (3, 7)


def test_self_loops_are_ignored():
    graph = OverlapGraph([(1, 1), (1, 2)])
    assert graph.edges == {(1, 2)}


def test_single_component_is_unchanged():
    pairs = [(0, 1), (1, 2), (2, 3), (3, 0), (1, 3)]
    graph = OverlapGraph(pairs)
    matches = make_matches(pairs)
    nodes_before, edges_before = set(graph.nodes), set(graph.edges)

    kept = graph.keep_largest_component(matches)

    assert kept == nodes_before
    assert graph.nodes == nodes_before
    assert graph.edges == edges_before
    assert set(matches) == edges_before


def test_keeps_five_node_component_and_drops_three_node_component():
    big = [(10, 11), (11, 12), (12, 13), (13, 14), (10, 14)]
    small = [(3, 1), (2, 3)]  # stored reversed on purpose
    graph = OverlapGraph(big + small)
    matches = make_matches(big + small)

    kept = graph.keep_largest_component(matches)

    assert kept == {10, 11, 12, 13, 14}
    assert graph.nodes == kept
    assert all(a in kept and b in kept for a, b in graph.edges)
    assert all(a in kept and b in kept for a, b in matches)
    assert (1, 3) not in matches and (2, 3) not in matches
    assert len(matches) == len(big)


def test_ties_go_to_first_found_component():
    graph = OverlapGraph([(5, 6), (0, 1)])
    assert graph.keep_largest_component() == {0, 1}


def test_empty_graph_raises():
    with pytest.raises(GraphEmptyError):
        OverlapGraph().keep_largest_component({})


def test_connected_components_discovery_order():
    graph = OverlapGraph([(8, 9), (0, 4), (4, 2)])
    assert graph.connected_components() == [{0, 2, 4}, {8, 9}]


def test_poor_support_filter_uses_total_over_describers():
    matches = {
        (0, 1): {"SIFT": np.zeros((60, 2), dtype=np.int64), "AKAZE": np.zeros((60, 2), dtype=np.int64)},
        (1, 2): {"SIFT": np.zeros((119, 2), dtype=np.int64)},
    }
    filter_poor_support(matches, 120)
    assert list(matches) == [(0, 1)]


def test_triangle_with_one_weak_edge_stays_connected():
    matches = make_matches([(0, 1), (1, 2)])
    matches[(0, 2)] = {"SIFT": np.zeros((100, 2), dtype=np.int64)}

    graph = prune_graph(matches, 120)

    assert graph.nodes == {0, 1, 2}
    assert graph.edges == {(0, 1), (1, 2)}
    assert len(graph.connected_components()) == 1


def test_weak_edge_splits_off_a_node():
    matches = make_matches([(0, 1), (2, 3), (3, 4)])
    matches[(1, 2)] = {"SIFT": np.zeros((10, 2), dtype=np.int64)}

    graph = prune_graph(matches, 120)

    assert graph.nodes == {2, 3, 4}
    assert set(matches) == {(2, 3), (3, 4)}


def test_prune_graph_writes_snapshots(tmp_path):
    matches = make_matches([(0, 1), (2, 3), (3, 4)])
    prune_graph(matches, 120, tmp_path)

    for name in ("initial_graph.dot", "support_filtered_graph.dot", "cleaned_graph.dot"):
        assert (tmp_path / name).is_file()
    cleaned = (tmp_path / "cleaned_graph.dot").read_text()
    assert "n2 -- n3;" in cleaned
    assert "n0 -- n1;" not in cleaned


def test_camera_index_is_a_dense_bijection():
    index = CameraIndex([42, 7, 19])
    assert len(index) == 3
    assert [index.index(v) for v in (7, 19, 42)] == [0, 1, 2]
    assert [index.view_id(i) for i in range(3)] == [7, 19, 42]
    assert 19 in index and 8 not in index
