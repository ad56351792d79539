import json
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd
import typer
from numpy.typing import NDArray
from tqdm import tqdm

from config import HARMONIZE_METHOD, MIN_MATCH_SUPPORT, HarmonizeConfig
from errors import ConfigError, HarmonizationError, InputError
from lp import ChannelSolution, HighsSolver, LPSolver, solve_channel
from selection import MaskFn, get_mask_fn
from utils import (
    CHANNELS,
    NUM_BINS,
    CameraIndex,
    NDArrayFloat,
    NDArrayInt,
    OverlapGraph,
    Pair,
    PairwiseMatches,
    RegionsPerDesc,
    RelativeHistogramEdge,
    View,
    filter_poor_support,
    load_matches,
    load_regions,
    load_views,
    read_rgb,
    write_rgb,
)

app = typer.Typer()


@dataclass
class HarmonizationResult:
    camera_index: CameraIndex
    solutions: list[ChannelSolution]  # red, green, blue
    output_dir: Path


def prune_graph(matches: PairwiseMatches, min_support: int, out_dir: Path | None = None) -> OverlapGraph:
    """Drop poorly supported pairs, then keep only the largest connected component (graph and matches).

    Graph snapshots are written to out_dir before and after each step.
    """
    if out_dir is not None:
        OverlapGraph.from_matches(matches).to_dot(out_dir / "initial_graph.dot", "initial")

    filter_poor_support(matches, min_support)
    graph = OverlapGraph.from_matches(matches)
    if out_dir is not None:
        graph.to_dot(out_dir / "support_filtered_graph.dot", "support_filtered")

    graph.keep_largest_component(matches)
    if out_dir is not None:
        graph.to_dot(out_dir / "cleaned_graph.dot", "cleaned")
    return graph


def channel_histograms(img: NDArray[np.uint8], mask: NDArray[np.uint8]) -> NDArrayInt:
    """Per-channel 256-bin histograms of the pixels where mask is non-zero; (3, 256)."""
    if mask.shape != img.shape[:2]:
        raise InputError(f"mask of shape {mask.shape} does not match image of shape {img.shape[:2]}")
    selected = img[mask > 0]  # (P, 3)
    return np.stack([np.bincount(selected[:, c], minlength=NUM_BINS) for c in range(len(CHANNELS))])


def extract_histograms(
    edges: list[Pair],
    views: dict[int, View],
    matches: PairwiseMatches,
    regions: dict[int, RegionsPerDesc],
    camera_index: CameraIndex,
    mask_fn: MaskFn,
    num_workers: int = 4,
) -> list[list[RelativeHistogramEdge]]:
    """Relative histogram edges for every surviving pair, one list per channel (red, green, blue)."""

    def process_edge(edge: Pair) -> NDArrayInt:
        view_a, view_b = views[edge[0]], views[edge[1]]
        mask_a, mask_b = mask_fn(view_a, view_b, matches[edge], regions.get(edge[0], {}), regions.get(edge[1], {}))
        hist_a = channel_histograms(read_rgb(view_a.path), mask_a)
        hist_b = channel_histograms(read_rgb(view_b.path), mask_b)
        return np.stack((hist_a, hist_b))  # (2, 3, 256)

    with ThreadPoolExecutor(max_workers=num_workers) as pool:
        per_edge = list(tqdm(pool.map(process_edge, edges), total=len(edges), desc="Histograms"))

    relative_edges: list[list[RelativeHistogramEdge]] = [[] for _ in CHANNELS]
    for (a, b), hists in zip(edges, per_edge):
        for c in range(len(CHANNELS)):
            relative_edges[c].append(
                RelativeHistogramEdge(camera_index.index(a), camera_index.index(b), hists[0, c], hists[1, c])
            )
    return relative_edges


def solve_all_channels(
    relative_edges: list[list[RelativeHistogramEdge]],
    num_cameras: int,
    ref_index: int,
    solver: LPSolver | None = None,
    num_workers: int = 3,
) -> list[ChannelSolution]:
    """One independent LP per channel; any failure aborts with the failing channel's LPSolveFailure."""
    solver = solver or HighsSolver()
    with ThreadPoolExecutor(max_workers=min(num_workers, len(CHANNELS))) as pool:
        futures = [
            pool.submit(solve_channel, channel, edges, num_cameras, ref_index, solver)
            for channel, edges in zip(CHANNELS, relative_edges)
        ]
        return [f.result() for f in futures]


def build_lut(gains: NDArrayFloat, offsets: NDArrayFloat) -> NDArray[np.uint8]:
    """(3, 256) lookup table: lut[c, k] = clamp(round(k * gain_c + offset_c), 0, 255)."""
    k = np.arange(NUM_BINS, dtype=np.float64)
    values = k[None, :] * np.asarray(gains, dtype=np.float64)[:, None] + np.asarray(offsets, dtype=np.float64)[:, None]
    values = np.nan_to_num(values, nan=0.0, posinf=255.0, neginf=0.0)
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


def apply_lut(img: NDArray[np.uint8], lut: NDArray[np.uint8]) -> NDArray[np.uint8]:
    out = np.empty_like(img)
    for c in range(len(CHANNELS)):
        out[..., c] = lut[c][img[..., c]]
    return out


def camera_luts(solutions: list[ChannelSolution], camera_index: CameraIndex) -> dict[int, NDArray[np.uint8]]:
    """Lookup table of every surviving view, keyed by view id."""
    luts = {}
    for view_id in camera_index:
        i = camera_index.index(view_id)
        luts[view_id] = build_lut([s.gains[i] for s in solutions], [s.offsets[i] for s in solutions])
    return luts


def apply_harmonization(
    views: dict[int, View], luts: dict[int, NDArray[np.uint8]], out_folder: Path, num_workers: int = 4
) -> list[Path]:
    """Remap every image through its LUT into out_folder.

    Images go to a staging folder renamed into place once all of them are written, so a failure
    never leaves a partially harmonized set behind.
    """
    names = [views[view_id].path.name for view_id in luts]
    if len(set(names)) != len(names):
        raise InputError("harmonized images would overwrite each other: duplicate image file names")

    staging = out_folder.parent / f".{out_folder.name}.staging"
    shutil.rmtree(staging, ignore_errors=True)
    staging.mkdir(parents=True)

    def process_image(view_id: int) -> str:
        view = views[view_id]
        write_rgb(staging / view.path.name, apply_lut(read_rgb(view.path), luts[view_id]))
        return view.path.name

    try:
        with ThreadPoolExecutor(max_workers=num_workers) as pool:
            names = list(tqdm(pool.map(process_image, sorted(luts)), total=len(luts), desc="Applying LUTs"))
        if out_folder.exists():
            shutil.rmtree(out_folder)
        staging.rename(out_folder)
    except Exception:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    return [out_folder / name for name in names]


def write_report(out_dir: Path, camera_index: CameraIndex, solutions: list[ChannelSolution], num_edges: int):
    """JSON report (errors + raw solution vectors) and a per-camera gain/offset CSV table."""
    report = {
        "harmonize_method": HARMONIZE_METHOD,
        "num_cameras": len(camera_index),
        "num_edges": num_edges,
        "view_ids": list(camera_index),
        "max_error": {s.channel: s.max_error for s in solutions},
        "solution": {s.channel: s.to_vector().tolist() for s in solutions},
    }
    df = pd.DataFrame({"view_id": list(camera_index)})
    for s in solutions:
        df[f"gain_{s.channel}"] = s.gains
        df[f"offset_{s.channel}"] = s.offsets

    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        with open(out_dir / "harmonization_report.json", "w") as f:
            json.dump(report, f, indent=2)
        df.to_csv(out_dir / "gain_offset.csv", index=False)
    except OSError as e:
        raise HarmonizationError(f"Unable to write the harmonization report to {out_dir}: {e}") from e


def harmonize(
    views: dict[int, View],
    matches: PairwiseMatches,
    regions: dict[int, RegionsPerDesc],
    cfg: HarmonizeConfig,
    mask_fn: MaskFn | None = None,
    solver: LPSolver | None = None,
) -> HarmonizationResult:
    """PRUNE -> EXTRACT -> SOLVE -> APPLY on already loaded inputs. matches is pruned in place."""
    cfg.check_reference(views)
    if not matches:
        raise InputError("Matches file is empty")
    unknown = {view_id for pair in matches for view_id in pair} - views.keys()
    if unknown:
        raise InputError(f"matches reference views missing from the scene: {sorted(unknown)}")
    mask_fn = mask_fn or get_mask_fn(cfg.selection_method, cfg.circle_radius)

    print("Pruning the overlap graph...")
    graph = prune_graph(matches, cfg.min_match_support, cfg.out_dir)
    if cfg.reference_id not in graph.nodes:
        raise ConfigError(f"reference image id {cfg.reference_id} is not in the largest connected component")

    camera_index = CameraIndex(graph.nodes)
    print(f"Remaining cameras after CC filter: {len(camera_index)} from a total of {len(views)}")

    edges = sorted(graph.edges)
    relative_edges = extract_histograms(edges, views, matches, regions, camera_index, mask_fn, cfg.num_workers)

    print("Solving for color consistency with linear programming...")
    start = time.perf_counter()
    solutions = solve_all_channels(
        relative_edges, len(camera_index), camera_index.index(cfg.reference_id), solver, cfg.num_workers
    )
    print(f"Solved on a graph with {len(edges)} edges in {time.perf_counter() - start:.2f}s")
    print("L-infinity fitting error:")
    for s in solutions:
        print(f"  - {s.channel} channel: {s.max_error:.4f} gray level(s)")
    for s in solutions:
        print(f"Found solution ({s.channel}): {np.array2string(s.to_vector(), precision=4)}")

    print(f"There are {len(camera_index)} images to transform.")
    luts = camera_luts(solutions, camera_index)
    apply_harmonization(views, luts, cfg.harmonized_dir, cfg.num_workers)
    try:
        write_report(cfg.out_dir, camera_index, solutions, len(edges))
    except Exception:
        shutil.rmtree(cfg.harmonized_dir, ignore_errors=True)
        raise

    return HarmonizationResult(camera_index, solutions, cfg.harmonized_dir)


def run(cfg: HarmonizeConfig, mask_fn: MaskFn | None = None, solver: LPSolver | None = None) -> HarmonizationResult:
    """Load scene, matches and regions from disk, then harmonize."""
    views = load_views(cfg.input_file)
    cfg.check_reference(views)
    if not cfg.matches_dir.is_dir():
        raise InputError(f"Matches directory is not a valid directory: {cfg.matches_dir}")
    matches = load_matches(cfg.matches_dir, cfg.geometric_model, cfg.describer_methods)
    regions = load_regions(cfg.matches_dir, views, cfg.describer_methods)
    return harmonize(views, matches, regions, cfg, mask_fn, solver)


@app.command()
def main(
    input_file: Path = typer.Option(..., "--input-file", "-i", help="sfm_data.json scene file"),
    matches_dir: Path = typer.Option(..., "--matches-dir", "-m", help="Directory with matches and features"),
    out_dir: Path = typer.Option(..., "--out-dir", "-o", help="Output directory"),
    selection_method: str = typer.Option(
        ...,
        "--selection-method",
        "-s",
        help="Region selection: 'full-frame', 'matched-points' or 'segment'",
    ),
    reference_id: int = typer.Option(..., "--reference-image", "-r", help="View id of the reference camera"),
    describer_methods: str = typer.Option(
        "SIFT", "--describer-methods", "-d", help="Comma separated describer types, e.g. 'SIFT,AKAZE'"
    ),
    geometric_model: str = typer.Option(
        "f", "--geometric-model", "-g", help="Geometric model of the matches: 'f', 'e' or 'h'"
    ),
    min_support: int = typer.Option(MIN_MATCH_SUPPORT, "--min-support", help="Minimum matches per image pair"),
    circle_radius: int = typer.Option(10, "--circle-radius", help="Disc radius for 'matched-points' selection"),
    num_workers: int = typer.Option(4, "--workers", "-w", help="Worker threads", min=1),
):
    """Global color harmonization: per-camera gain/offset by minimax linear programming."""
    try:
        cfg = HarmonizeConfig(
            input_file=input_file,
            matches_dir=matches_dir,
            out_dir=out_dir,
            selection_method=selection_method,
            reference_id=reference_id,
            describer_methods=describer_methods.split(","),
            geometric_model=geometric_model,
            min_match_support=min_support,
            circle_radius=circle_radius,
            num_workers=num_workers,
        )
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo("Configuration:")
    typer.echo(f"  Scene: {cfg.input_file}")
    typer.echo(f"  Matches: {cfg.matches_dir} (model '{cfg.geometric_model}')")
    typer.echo(f"  Describers: {', '.join(cfg.describer_methods)}")
    typer.echo(f"  Selection: {cfg.selection_method}")
    typer.echo(f"  Reference view: {cfg.reference_id}")
    typer.echo()

    start = time.perf_counter()
    try:
        result = run(cfg)
    except HarmonizationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Harmonized images written to {result.output_dir}")
    typer.echo(f"ColorHarmonization took {time.perf_counter() - start:.2f}s")


if __name__ == "__main__":
    app()
