"""Minimax (L-infinity) gain/offset alignment solved as a sparse linear program."""

from dataclasses import dataclass
from typing import Protocol, Sequence

import numpy as np
from scipy.optimize import linprog
from scipy.sparse import csr_matrix

from errors import LPSolveFailure
from utils import NDArrayFloat, NDArrayInt, RelativeHistogramEdge, UnionFind


def cumulative_correspondences(hist_u: NDArrayInt, hist_v: NDArrayInt) -> NDArrayInt:
    """Match intensity levels of two histograms by cumulative mass.

    For every populated bin k of hist_u, k' is the bin of hist_v whose normalized cumulative mass is
    closest to that of k (lowest bin on ties). Returns (K, 2) pairs (k, k'); empty if either
    histogram is empty.
    """
    hu = np.asarray(hist_u, dtype=np.float64)
    hv = np.asarray(hist_v, dtype=np.float64)
    if hu.sum() == 0 or hv.sum() == 0:
        return np.zeros((0, 2), dtype=np.int64)

    cdf_u = np.cumsum(hu) / hu.sum()
    cdf_v = np.cumsum(hv) / hv.sum()
    ks = np.flatnonzero(hu > 0)
    # argmin returns the first minimum, i.e. the lowest bin on ties
    k_prime = np.abs(cdf_v[None, :] - cdf_u[ks, None]).argmin(axis=1)
    return np.stack((ks, k_prime), axis=1).astype(np.int64)


class LinearProgram:
    """minimize c @ x  s.t.  A_ub @ x <= b_ub,  A_eq @ x == b_eq,  lo <= x <= hi

    Constraint rows are accumulated in COO form and turned into sparse matrices on demand.
    """

    def __init__(self, num_vars: int):
        self.num_vars = num_vars
        self.c = np.zeros(num_vars)
        self.bounds: list[tuple[float | None, float | None]] = [(None, None)] * num_vars
        self._rows = {"<=": ([], [], [], []), "==": ([], [], [], [])}  # row ids, cols, vals, rhs

    def set_objective(self, c: Sequence[float]):
        c = np.asarray(c, dtype=np.float64)
        if c.shape != (self.num_vars,):
            raise ValueError(f"objective must have {self.num_vars} coefficients, got {c.shape}")
        self.c = c

    def set_bounds(self, var: int, lo: float | None, hi: float | None):
        self.bounds[var] = (lo, hi)

    def add_row(self, coeffs: dict[int, float], rhs: float, sense: str = "<="):
        cols = np.fromiter(coeffs.keys(), dtype=np.int64)
        vals = np.fromiter(coeffs.values(), dtype=np.float64)
        self.add_rows(cols[None], vals[None], np.array([rhs]), sense)

    def add_rows(self, cols: NDArrayInt, vals: NDArrayFloat, rhs: NDArrayFloat, sense: str = "<="):
        """Add R rows at once; cols and vals are (R, K), rhs is (R,)."""
        if sense not in self._rows:
            raise ValueError(f"Unknown constraint sense: {sense}")
        row_ids, all_cols, all_vals, all_rhs = self._rows[sense]
        cols, vals = np.broadcast_arrays(np.asarray(cols), np.asarray(vals))
        n_rows, width = cols.shape
        first = len(all_rhs)
        row_ids.extend(np.repeat(np.arange(first, first + n_rows), width).tolist())
        all_cols.extend(cols.ravel().tolist())
        all_vals.extend(vals.ravel().tolist())
        all_rhs.extend(np.asarray(rhs, dtype=np.float64).tolist())

    def num_rows(self, sense: str = "<=") -> int:
        return len(self._rows[sense][3])

    def matrices(self, sense: str = "<=") -> tuple[csr_matrix | None, NDArrayFloat | None]:
        row_ids, cols, vals, rhs = self._rows[sense]
        if not rhs:
            return None, None
        A = csr_matrix((vals, (row_ids, cols)), shape=(len(rhs), self.num_vars))
        return A, np.asarray(rhs)


@dataclass
class LPResult:
    success: bool
    x: NDArrayFloat | None
    message: str = ""


class LPSolver(Protocol):
    def solve(self, lp: LinearProgram) -> LPResult: ...


class HighsSolver:
    """LP backend: HiGHS through scipy.optimize.linprog."""

    def __init__(self, method: str = "highs"):
        self.method = method

    def solve(self, lp: LinearProgram) -> LPResult:
        A_ub, b_ub = lp.matrices("<=")
        A_eq, b_eq = lp.matrices("==")
        res = linprog(lp.c, A_ub=A_ub, b_ub=b_ub, A_eq=A_eq, b_eq=b_eq, bounds=lp.bounds, method=self.method)
        if res.status != 0 or res.x is None:
            return LPResult(False, None, res.message)
        return LPResult(True, res.x, res.message)


class GainOffsetConstraintBuilder:
    """Builds the per-channel minimax LP over (gain_i, offset_i) pairs plus the worst-case error gamma.

    Variable layout: [g_0, o_0, g_1, o_1, ..., g_{N-1}, o_{N-1}, gamma].
    """

    def __init__(self, edges: list[RelativeHistogramEdge], num_cameras: int, fixed_indices: Sequence[int]):
        self.edges = edges
        self.num_cameras = num_cameras
        self.fixed_indices = list(fixed_indices)
        self.constrained_cameras: set[int] = set()  # cameras tied to a fixed camera by anchored edges

    @property
    def num_vars(self) -> int:
        return 2 * self.num_cameras + 1

    def build(self) -> LinearProgram:
        lp = LinearProgram(self.num_vars)
        gamma = self.num_vars - 1

        for i in range(self.num_cameras):
            lp.set_bounds(2 * i, 0.0, None)  # gain >= 0, offset free
        lp.set_bounds(gamma, 0.0, None)

        linked = UnionFind(range(self.num_cameras))
        for edge in self.edges:
            anchors = cumulative_correspondences(edge.hist_a, edge.hist_b)
            if len(anchors) == 0:
                continue
            linked.union(edge.index_a, edge.index_b)

            k = anchors[:, 0].astype(np.float64)
            k_prime = anchors[:, 1].astype(np.float64)
            ones = np.ones_like(k)
            a, b = edge.index_a, edge.index_b
            cols = np.array([[2 * a, 2 * a + 1, 2 * b, 2 * b + 1, gamma]])

            # (g_a k + o_a) - (g_b k' + o_b) <= gamma
            lp.add_rows(cols, np.stack((k, ones, -k_prime, -ones, -ones), axis=1), np.zeros_like(k))
            # (g_b k' + o_b) - (g_a k + o_a) <= gamma
            lp.add_rows(cols, np.stack((-k, -ones, k_prime, ones, -ones), axis=1), np.zeros_like(k))

        for i in self.fixed_indices:
            # equality rows plus collapsed bounds so the solver reports the pin exactly
            lp.set_bounds(2 * i, 1.0, 1.0)
            lp.set_bounds(2 * i + 1, 0.0, 0.0)
            lp.add_row({2 * i: 1.0}, 1.0, "==")
            lp.add_row({2 * i + 1: 1.0}, 0.0, "==")

        fixed_roots = {linked.find(i) for i in self.fixed_indices}
        self.constrained_cameras = {i for i in range(self.num_cameras) if linked.find(i) in fixed_roots}

        c = np.zeros(self.num_vars)
        c[gamma] = 1.0
        lp.set_objective(c)
        return lp


@dataclass
class ChannelSolution:
    channel: str
    gains: NDArrayFloat  # (N,)
    offsets: NDArrayFloat  # (N,)
    max_error: float  # worst-case fitting error, gray levels

    @classmethod
    def from_vector(cls, channel: str, x: NDArrayFloat) -> "ChannelSolution":
        x = np.asarray(x, dtype=np.float64)
        if len(x) % 2 != 1:
            raise ValueError(f"solution vector must have 2N+1 entries, got {len(x)}")
        return cls(channel, x[:-1:2].copy(), x[1:-1:2].copy(), float(x[-1]))

    def to_vector(self) -> NDArrayFloat:
        x = np.empty(2 * len(self.gains) + 1)
        x[:-1:2], x[1:-1:2], x[-1] = self.gains, self.offsets, self.max_error
        return x


def solve_channel(
    channel: str,
    edges: list[RelativeHistogramEdge],
    num_cameras: int,
    ref_index: int,
    solver: LPSolver | None = None,
) -> ChannelSolution:
    """Solve the gain/offset alignment of one color channel; raises LPSolveFailure on any failure."""
    builder = GainOffsetConstraintBuilder(edges, num_cameras, [ref_index])
    lp = builder.build()

    unconstrained = sorted(set(range(num_cameras)) - builder.constrained_cameras)
    if unconstrained:
        raise LPSolveFailure(
            channel, f"cameras {unconstrained} have no histogram correspondences linking them to the reference"
        )

    print(f"[{channel}] LP with {lp.num_vars} variables and {lp.num_rows('<=')} inequality rows")
    result = (solver or HighsSolver()).solve(lp)
    if not result.success:
        raise LPSolveFailure(channel, result.message)

    solution = ChannelSolution.from_vector(channel, result.x)
    print(f"[{channel}] L-infinity fitting error: {solution.max_error:.4f} gray level(s)")
    return solution