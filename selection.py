"""Region selection strategies: which pixels of an image pair feed the overlap histograms."""

from functools import partial
from typing import Callable

import cv2 as cv
import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree

from errors import InputError, UnsupportedSelectionMethod
from utils import MatchesPerDesc, RegionsPerDesc, View

Mask = NDArray[np.uint8]
MaskFn = Callable[[View, View, MatchesPerDesc, RegionsPerDesc, RegionsPerDesc], tuple[Mask, Mask]]


def _empty_masks(view_a: View, view_b: View) -> tuple[Mask, Mask]:
    return (
        np.zeros((view_a.height, view_a.width), dtype=np.uint8),
        np.zeros((view_b.height, view_b.width), dtype=np.uint8),
    )


def _matched_points(
    desc: str, matches: NDArray, regions_a: RegionsPerDesc, regions_b: RegionsPerDesc
) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
    """Positions of the matched features of one describer in both images; (M, 2) each."""
    if desc not in regions_a or desc not in regions_b:
        raise InputError(f"no {desc} regions loaded for a matched image pair")
    regions_a, regions_b = regions_a[desc], regions_b[desc]
    if len(matches) == 0:
        return np.zeros((0, 2), np.float32), np.zeros((0, 2), np.float32)
    if matches[:, 0].max() >= len(regions_a) or matches[:, 1].max() >= len(regions_b):
        raise InputError("match references a feature index outside the loaded regions")
    return regions_a[matches[:, 0]], regions_b[matches[:, 1]]


def full_frame_masks(
    view_a: View, view_b: View, matches: MatchesPerDesc, regions_a: RegionsPerDesc, regions_b: RegionsPerDesc
) -> tuple[Mask, Mask]:
    """Every pixel of both images."""
    mask_a, mask_b = _empty_masks(view_a, view_b)
    mask_a.fill(255)
    mask_b.fill(255)
    return mask_a, mask_b


def matched_points_masks(
    view_a: View,
    view_b: View,
    matches: MatchesPerDesc,
    regions_a: RegionsPerDesc,
    regions_b: RegionsPerDesc,
    radius: int = 10,
) -> tuple[Mask, Mask]:
    """Filled discs of the given radius around every matched feature."""
    mask_a, mask_b = _empty_masks(view_a, view_b)
    for desc, idx in matches.items():
        pts_a, pts_b = _matched_points(desc, idx, regions_a, regions_b)
        for (xa, ya), (xb, yb) in zip(pts_a, pts_b):
            cv.circle(mask_a, (int(round(xa)), int(round(ya))), radius, 255, thickness=-1)
            cv.circle(mask_b, (int(round(xb)), int(round(yb))), radius, 255, thickness=-1)
    return mask_a, mask_b


def segment_masks(
    view_a: View,
    view_b: View,
    matches: MatchesPerDesc,
    regions_a: RegionsPerDesc,
    regions_b: RegionsPerDesc,
    thickness: int = 3,
    max_length_ratio: float = 1.5,
) -> tuple[Mask, Mask]:
    """Line segments joining each match to its nearest matched neighbour.

    A segment is drawn only when its lengths in both images agree within max_length_ratio, which
    keeps segments whose endpoints are consistent between the two views.
    """
    mask_a, mask_b = _empty_masks(view_a, view_b)
    for desc, idx in matches.items():
        pts_a, pts_b = _matched_points(desc, idx, regions_a, regions_b)
        if len(pts_a) < 2:
            continue

        # nearest matched neighbour of every matched point in image a
        nn = cKDTree(pts_a).query(pts_a, k=2)[1][:, 1]

        for m, n in enumerate(nn):
            len_a = float(np.linalg.norm(pts_a[m] - pts_a[n]))
            len_b = float(np.linalg.norm(pts_b[m] - pts_b[n]))
            if min(len_a, len_b) == 0.0 or max(len_a, len_b) / min(len_a, len_b) > max_length_ratio:
                continue
            cv.line(mask_a, _pt(pts_a[m]), _pt(pts_a[n]), 255, thickness)
            cv.line(mask_b, _pt(pts_b[m]), _pt(pts_b[n]), 255, thickness)
    return mask_a, mask_b


def _pt(p: NDArray) -> tuple[int, int]:
    return int(round(p[0])), int(round(p[1]))


def get_mask_fn(method: str, circle_radius: int = 10) -> MaskFn:
    if method == "full-frame":
        return full_frame_masks
    elif method == "matched-points":
        return partial(matched_points_masks, radius=circle_radius)
    elif method == "segment":
        return segment_masks
    else:
        raise UnsupportedSelectionMethod(f"Selection method unsupported: {method}")
