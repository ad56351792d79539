import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import cv2 as cv
import numpy as np
from numpy.typing import NDArray

from errors import GraphEmptyError, HarmonizationError, InputError

NDArrayFloat = NDArray[np.floating[Any]]
NDArrayInt = NDArray[np.integer[Any]]
Pair = tuple[int, int]  # canonical (min_id, max_id)
MatchesPerDesc = dict[str, NDArrayInt]  # describer -> (M, 2) feature index pairs
PairwiseMatches = dict[Pair, MatchesPerDesc]
RegionsPerDesc = dict[str, NDArrayFloat]  # describer -> (K, 2) feature positions (x, y)

NUM_BINS = 256
CHANNELS = ("red", "green", "blue")


@dataclass(frozen=True)
class View:
    id: int
    path: Path
    width: int
    height: int


def pair_key(a: int, b: int) -> Pair:
    return (a, b) if a <= b else (b, a)


def total_matches(matches_per_desc: MatchesPerDesc) -> int:
    return sum(len(m) for m in matches_per_desc.values())


def filter_poor_support(matches: PairwiseMatches, min_support: int) -> None:
    """Drop in place every pair whose match count (all describers) is below min_support."""
    for key in [k for k, m in matches.items() if total_matches(m) < min_support]:
        del matches[key]


class UnionFind:
    def __init__(self, items: Iterable[int] = ()):
        self.parent: dict[int, int] = {}
        self.rank: dict[int, int] = {}
        for item in items:
            self.add(item)

    def add(self, x: int):
        if x not in self.parent:
            self.parent[x] = x
            self.rank[x] = 0

    def find(self, x: int) -> int:
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        # path compression
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, a: int, b: int):
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1


class OverlapGraph:
    """
    Undirected overlap graph: one node per view id, one edge per supported image pair.
    """

    def __init__(self, pairs: Iterable[Pair] = ()):
        self.nodes: set[int] = set()
        self.edges: set[Pair] = set()
        for a, b in pairs:
            self.add_edge(a, b)

    @classmethod
    def from_matches(cls, matches: PairwiseMatches) -> "OverlapGraph":
        return cls(matches.keys())

    def add_edge(self, a: int, b: int):
        if a == b:
            return
        self.nodes.update((a, b))
        self.edges.add(pair_key(a, b))

    def connected_components(self) -> list[set[int]]:
        """Components in discovery order, scanning nodes by ascending id."""
        uf = UnionFind(self.nodes)
        for a, b in self.edges:
            uf.union(a, b)

        components: dict[int, set[int]] = {}
        for node in sorted(self.nodes):
            components.setdefault(uf.find(node), set()).add(node)
        return list(components.values())

    def keep_largest_component(self, matches: PairwiseMatches | None = None) -> set[int]:
        """Prune the graph (and the match set) down to its largest connected component.

        Ties go to the component found first. Raises GraphEmptyError if the graph has no component.
        """
        components = self.connected_components()
        print(f"Connected components: {len(components)}")
        if not components:
            raise GraphEmptyError("there is no connected component left in the overlap graph")

        largest = components[0]
        for component in components:
            print(f"  component of size {len(component)}")
            if len(component) > len(largest):
                largest = component

        dropped = [e for e in self.edges if e[0] not in largest]
        for edge in dropped:
            self.edges.remove(edge)
            if matches is not None:
                matches.pop(edge, None)
        self.nodes &= largest

        print(f"Kept {len(self.nodes)} nodes and {len(self.edges)} edges ({len(dropped)} edges removed)")
        return set(largest)

    def to_dot(self, filename: Path, name: str = "G"):
        """Write the graph in Graphviz dot format."""
        filename.parent.mkdir(exist_ok=True, parents=True)
        with open(filename, "w") as f:
            f.write(f"graph {name} {{\n")
            for node in sorted(self.nodes):
                f.write(f"  n{node} [label=\"{node}\"];\n")
            for a, b in sorted(self.edges):
                f.write(f"  n{a} -- n{b};\n")
            f.write("}\n")


class CameraIndex:
    """Bijection between sparse view ids and the dense camera indices of the LP variable layout."""

    def __init__(self, view_ids: Iterable[int]):
        self._ids = sorted(set(view_ids))
        self._index = {view_id: i for i, view_id in enumerate(self._ids)}

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, view_id: int) -> bool:
        return view_id in self._index

    def __iter__(self) -> Iterator[int]:
        return iter(self._ids)

    def index(self, view_id: int) -> int:
        return self._index[view_id]

    def view_id(self, idx: int) -> int:
        return self._ids[idx]


@dataclass(frozen=True, eq=False)
class RelativeHistogramEdge:
    index_a: int
    index_b: int
    hist_a: NDArrayInt  # (256,)
    hist_b: NDArrayInt  # (256,)


def load_views(sfm_data_file: Path) -> dict[int, View]:
    """Read the view list of an openMVG / AliceVision sfm_data.json file."""
    if not sfm_data_file.is_file():
        raise InputError(f"Invalid input sfm_data file: {sfm_data_file}")
    try:
        with open(sfm_data_file) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InputError(f"The input file {sfm_data_file} cannot be read: {e}") from e

    root = sfm_data_file.parent / data.get("root_path", "")
    views = {}
    try:
        for entry in data["views"]:
            if "value" in entry:  # openMVG polymorphic pointer layout
                v = entry["value"]["ptr_wrapper"]["data"]
                view_id = int(v.get("id_view", entry["key"]))
                path = root / v.get("local_path", "") / v["filename"]
            else:  # AliceVision flat layout
                v = entry
                view_id = int(v["viewId"])
                path = root / v["path"]
            views[view_id] = View(view_id, path, int(v["width"]), int(v["height"]))
    except (KeyError, TypeError, ValueError) as e:
        raise InputError(f"Malformed view entry in {sfm_data_file}: {e}") from e

    if not views:
        raise InputError(f"No views in {sfm_data_file}")
    print(f"Loaded {len(views)} views from {sfm_data_file}")
    return views


def load_matches(matches_dir: Path, geometric_model: str, describers: list[str]) -> PairwiseMatches:
    """Read matches.<model>.txt, keeping only the requested describer types.

    Pairs are stored under canonical keys; a block written as `J I` has its columns swapped.
    """
    filename = matches_dir / f"matches.{geometric_model}.txt"
    if not filename.is_file():
        raise InputError(f"Unable to read the geometric matches: {filename}")

    wanted = {d.upper() for d in describers}
    matches: PairwiseMatches = {}
    try:
        tokens = iter(filename.read_text().split())
        for tok in tokens:
            i, j = int(tok), int(next(tokens))
            per_desc: MatchesPerDesc = {}
            for _ in range(int(next(tokens))):
                desc, count = next(tokens).upper(), int(next(tokens))
                idx = np.array([int(next(tokens)) for _ in range(2 * count)], dtype=np.int64).reshape(count, 2)
                if i > j:
                    idx = idx[:, ::-1].copy()
                if desc in wanted:
                    per_desc[desc] = idx
            if per_desc:
                key = pair_key(i, j)
                existing = matches.setdefault(key, {})
                for desc, idx in per_desc.items():
                    existing[desc] = np.vstack((existing[desc], idx)) if desc in existing else idx
    except (StopIteration, ValueError) as e:
        raise InputError(f"Truncated or malformed matches file {filename}") from e

    print(f"Loaded matches for {len(matches)} image pairs from {filename}")
    return matches


def load_regions(matches_dir: Path, view_ids: Iterable[int], describers: list[str]) -> dict[int, RegionsPerDesc]:
    """Read <view_id>.<describer>.feat files (x y scale orientation per line)."""
    regions: dict[int, RegionsPerDesc] = {}
    for view_id in view_ids:
        regions[view_id] = {}
        for desc in describers:
            feat_file = matches_dir / f"{view_id}.{desc.lower()}.feat"
            if not feat_file.is_file():
                raise InputError(f"Can't load feature file {feat_file}")
            rows = [line.split() for line in feat_file.read_text().splitlines() if line.strip()]
            try:
                xy = np.array([[float(r[0]), float(r[1])] for r in rows], dtype=np.float32).reshape(-1, 2)
            except (IndexError, ValueError) as e:
                raise InputError(f"Malformed feature file {feat_file}") from e
            regions[view_id][desc.upper()] = xy
    return regions


def read_rgb(path: Path) -> NDArray[np.uint8]:
    img = cv.imread(str(path), cv.IMREAD_COLOR)
    if img is None:
        raise InputError(f"Cannot read image {path}")
    return cv.cvtColor(img, cv.COLOR_BGR2RGB)


def write_rgb(path: Path, img: NDArray[np.uint8]):
    path.parent.mkdir(exist_ok=True, parents=True)
    if not cv.imwrite(str(path), cv.cvtColor(img, cv.COLOR_RGB2BGR)):
        raise HarmonizationError(f"Cannot write image {path}")
