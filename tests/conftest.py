"""
Shared fixtures: synthetic scenes written to disk in the sfm_data / matches / feat layout.
"""

import json
from pathlib import Path

import cv2 as cv
import numpy as np
import pytest

from config import HarmonizeConfig

HEIGHT, WIDTH = 24, 32
NUM_FEATURES = 150


def base_image(seed: int = 0) -> np.ndarray:
    """RGB image with values spread over [30, 200] in every channel."""
    rng = np.random.default_rng(seed)
    return rng.integers(30, 201, size=(HEIGHT, WIDTH, 3), dtype=np.uint8)


def write_png(path: Path, rgb: np.ndarray):
    path.parent.mkdir(parents=True, exist_ok=True)
    assert cv.imwrite(str(path), cv.cvtColor(rgb, cv.COLOR_RGB2BGR))


def read_png(path: Path) -> np.ndarray:
    return cv.cvtColor(cv.imread(str(path), cv.IMREAD_COLOR), cv.COLOR_BGR2RGB)


class SceneBuilder:
    """Writes images, sfm_data.json, matches.f.txt and <id>.sift.feat files under a root folder."""

    def __init__(self, root: Path):
        self.root = root
        self.image_dir = root / "images"
        self.matches_dir = root / "matches"
        self.out_dir = root / "out"
        self.matches_dir.mkdir(parents=True, exist_ok=True)
        self.images: dict[int, np.ndarray] = {}
        self.pairs: dict[tuple[int, int], int] = {}
        self.reversed_pairs: set[tuple[int, int]] = set()

    def add_view(self, view_id: int, rgb: np.ndarray) -> "SceneBuilder":
        self.images[view_id] = rgb
        return self

    def add_pair(self, a: int, b: int, count: int = 150, reverse: bool = False) -> "SceneBuilder":
        self.pairs[(a, b)] = count
        if reverse:
            self.reversed_pairs.add((a, b))
        return self

    @property
    def sfm_data_file(self) -> Path:
        return self.root / "sfm_data.json"

    def write(self) -> "SceneBuilder":
        views = []
        for view_id, rgb in sorted(self.images.items()):
            write_png(self.image_dir / f"view_{view_id}.png", rgb)
            views.append(
                {
                    "key": view_id,
                    "value": {
                        "polymorphic_id": 1073741824,
                        "ptr_wrapper": {
                            "id": 2147483649 + view_id,
                            "data": {
                                "local_path": "",
                                "filename": f"view_{view_id}.png",
                                "width": rgb.shape[1],
                                "height": rgb.shape[0],
                                "id_view": view_id,
                                "id_intrinsic": 0,
                                "id_pose": view_id,
                            },
                        },
                    },
                }
            )
        with open(self.sfm_data_file, "w") as f:
            json.dump({"sfm_data_version": "0.3", "root_path": str(self.image_dir), "views": views}, f)

        # same feature positions in every view: matched features sit on the same pixels
        rng = np.random.default_rng(1)
        xy = np.stack((rng.uniform(0, WIDTH - 1, NUM_FEATURES), rng.uniform(0, HEIGHT - 1, NUM_FEATURES)), axis=1)
        for view_id in self.images:
            lines = [f"{x:.2f} {y:.2f} 1.0 0.0" for x, y in xy]
            (self.matches_dir / f"{view_id}.sift.feat").write_text("\n".join(lines) + "\n")

        blocks = []
        for (a, b), count in sorted(self.pairs.items()):
            i, j = (b, a) if (a, b) in self.reversed_pairs else (a, b)
            rows = [f"{k % NUM_FEATURES} {k % NUM_FEATURES}" for k in range(count)]
            blocks.append("\n".join([f"{i} {j}", "1", f"SIFT {count}", *rows]))
        (self.matches_dir / "matches.f.txt").write_text("\n".join(blocks) + "\n")
        return self

    def config(self, reference_id: int, selection_method: str = "full-frame", **kwargs) -> HarmonizeConfig:
        return HarmonizeConfig(
            input_file=self.sfm_data_file,
            matches_dir=self.matches_dir,
            out_dir=self.out_dir,
            selection_method=selection_method,
            reference_id=reference_id,
            num_workers=2,
            **kwargs,
        )


@pytest.fixture
def scene(tmp_path) -> SceneBuilder:
    return SceneBuilder(tmp_path)


@pytest.fixture
def uniform_hist() -> np.ndarray:
    """Histogram with unit mass on bins 40..200."""
    h = np.zeros(256, dtype=np.int64)
    h[40:201] = 1
    return h
