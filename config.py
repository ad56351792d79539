"""Configuration for the global color harmonization pipeline."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from errors import ConfigError, UnsupportedSelectionMethod

SelectionMethod = Literal["full-frame", "matched-points", "segment"]
SELECTION_METHODS: tuple[str, ...] = ("full-frame", "matched-points", "segment")
GEOMETRIC_MODELS: tuple[str, ...] = ("f", "e", "h")
HARMONIZE_METHOD = "quantile-gain-offset"

# Pairs with fewer matches than this are not considered overlapping
MIN_MATCH_SUPPORT = 120


@dataclass
class HarmonizeConfig:
    """Configuration for the color harmonization pipeline.

    Every value is checked on construction; nothing is resolved interactively.
    """

    # Inputs
    input_file: Path
    """sfm_data.json scene file listing the views"""

    matches_dir: Path
    """Directory holding matches.<model>.txt and the <view_id>.<describer>.feat files"""

    out_dir: Path
    """Root output directory (graph snapshots, report, harmonized images)"""

    selection_method: str
    """Region selection strategy: 'full-frame', 'matched-points' or 'segment'"""

    reference_id: int | None
    """View id of the camera pinned to gain=1, offset=0"""

    describer_methods: list[str] = field(default_factory=lambda: ["SIFT"])
    """Describer types whose matches and features are loaded"""

    geometric_model: str = "f"
    """Geometric model the matches were filtered with: 'f', 'e' or 'h'"""

    # Graph filtering
    min_match_support: int = MIN_MATCH_SUPPORT
    """Minimum number of matches (all describers) for a pair to count as an overlap edge"""

    # Selection
    circle_radius: int = 10
    """Radius in pixels of the disc drawn around each matched feature"""

    # Execution
    num_workers: int = 4
    """Thread pool size for histogram extraction, channel solves and LUT application"""

    def __post_init__(self):
        self.input_file = Path(self.input_file)
        self.matches_dir = Path(self.matches_dir)
        self.out_dir = Path(self.out_dir)

        if self.selection_method not in SELECTION_METHODS:
            raise UnsupportedSelectionMethod(
                f"selection method must be one of {', '.join(SELECTION_METHODS)}, got '{self.selection_method}'"
            )
        if self.reference_id is None:
            raise ConfigError("a reference image id is required")
        if self.geometric_model not in GEOMETRIC_MODELS:
            raise ConfigError(f"geometric model must be one of 'f', 'e', 'h', got '{self.geometric_model}'")

        self.describer_methods = [d.strip().upper() for d in self.describer_methods if d.strip()]
        if not self.describer_methods:
            raise ConfigError("at least one describer method is required")

        if self.min_match_support < 1:
            raise ConfigError(f"min_match_support must be positive, got {self.min_match_support}")
        if self.circle_radius < 1:
            raise ConfigError(f"circle_radius must be positive, got {self.circle_radius}")
        if self.num_workers < 1:
            raise ConfigError(f"num_workers must be at least 1, got {self.num_workers}")

    @property
    def harmonized_dir(self) -> Path:
        """Output folder keyed by selection and harmonization method."""
        return self.out_dir / f"{self.selection_method}_{HARMONIZE_METHOD}"

    def check_reference(self, view_ids) -> None:
        """Reject a reference id that is not one of the loaded views."""
        if self.reference_id not in set(view_ids):
            raise ConfigError(f"reference image id {self.reference_id} is not a view of the scene")
