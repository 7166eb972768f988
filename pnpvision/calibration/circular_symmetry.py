"""
Circular Symmetry Detection Module

Finds the center of the strongest circular symmetry in an image region and
the diameter of its largest contrast edge. Used to locate nozzle tips and
round fiducials without any thresholding or contour tuning.

The score of a candidate center is the overall pixel variance inside the
examined disc divided by the sum of the pixel variances along each
concentric ring. Concentric bands of different but locally uniform color
score high.
"""

import logging
import math
from typing import List, Optional, Tuple

import numpy as np

from .exceptions import VisionError
from .vision_utils import Circle

logger = logging.getLogger(__name__)

ITERATION_RADIUS = 2
ITERATION_DIVISION = 4

# Upper bound of gathered pixel values per candidate batch.
_MAX_BATCH_SAMPLES = 4_000_000


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _as_channels(image: np.ndarray) -> np.ndarray:
    pixels = np.asarray(image, dtype=np.float64)
    if pixels.ndim == 2:
        pixels = pixels[:, :, np.newaxis]
    if pixels.ndim != 3:
        raise VisionError(f"Unsupported image shape {np.shape(image)}")
    return pixels


def _build_rings(r: int, r0: int, ring_sub: int,
                 x_offset: float, y_offset: float) -> List[Tuple[int, np.ndarray, np.ndarray]]:
    """Concentric rings as (ring radius, dy indices, dx indices), inner ring first."""
    coords = np.arange(-r, r + 1, ring_sub)
    yy, xx = np.meshgrid(coords, coords, indexing='ij')
    d = np.sqrt((xx - x_offset) ** 2 + (yy - y_offset) ** 2)
    rounded = np.floor(d + 0.5).astype(int)
    # Truncate toward zero: pixels just inside r0 join the innermost ring.
    distance = r0 + np.trunc((rounded - r0) / ring_sub).astype(int) * ring_sub
    in_range = (distance >= r0) & (distance <= r)

    rings = []
    for ri in range(r0, r + 1, ring_sub):
        sel = in_range & (distance == ri)
        if np.any(sel):
            rings.append((ri, yy[sel], xx[sel]))
    return rings


def _score_candidates(pixels: np.ndarray, cx: np.ndarray, cy: np.ndarray,
                      rings, min_diameter: int) -> Tuple[np.ndarray, np.ndarray]:
    """Symmetry score and best contrast ring radius for each candidate center."""
    m = len(cx)
    channels = pixels.shape[2]
    variance_sum = np.full(m, 0.01)  # no div by zero
    sum_overall = np.zeros((m, channels))
    sum_sq_overall = np.zeros((m, channels))
    n_overall = 0
    last_avg = np.zeros(m)
    contrast_best = np.full(m, -np.inf)
    ri_contrast_best = np.zeros(m, dtype=int)

    for ri, dy, dx in rings:
        n = len(dy)
        ring = pixels[cy[:, np.newaxis] + dy[np.newaxis, :], cx[:, np.newaxis] + dx[np.newaxis, :]]
        ring_sum = ring.sum(axis=1)
        ring_sum_sq = (ring * ring).sum(axis=1)
        sum_overall += ring_sum
        sum_sq_overall += ring_sum_sq
        n_overall += n
        variance_sum += (ring_sum_sq - ring_sum * ring_sum / n).sum(axis=1)

        avg = ring_sum.sum(axis=1) / n
        if ri * 2 >= min_diameter:
            contrast = np.abs(avg - last_avg)
            better = contrast > contrast_best
            contrast_best = np.where(better, contrast, contrast_best)
            ri_contrast_best = np.where(better, ri, ri_contrast_best)
        last_avg = avg

    variance_overall = (sum_sq_overall - sum_overall * sum_overall / n_overall).sum(axis=1)
    return variance_overall / variance_sum, ri_contrast_best


def find_circular_symmetry(image: np.ndarray, x_center: int, y_center: int,
                           max_diameter: int, min_diameter: int, search_range: int,
                           min_symmetry: float = 1.2, sub_sampling: int = 8,
                           super_sampling: int = 1) -> Optional[Circle]:
    """
    Find the circle centered at the greatest circular symmetry in the image.

    Args:
        image: Grayscale (H, W) or multi-channel (H, W, C) image
        x_center: Nominal X center of the search area, in pixels
        y_center: Nominal Y center of the search area, in pixels
        max_diameter: Pixels outside this diameter are ignored
        min_diameter: Pixels inside this diameter are ignored
        search_range: Search range (diameter) around the nominal center, in pixels
        min_symmetry: Minimum score (overall variance / ring variance) for a match
        sub_sampling: Only one pixel out of a square of this size is examined on
            the first pass; finer passes follow around the best candidate
        super_sampling: Sub-pixel resolution of the final pass (1 = none)

    Returns:
        The detected Circle, or None if the best score is not above min_symmetry

    Raises:
        VisionError: If the search window does not fit inside the image
    """
    if max_diameter < min_diameter:
        raise VisionError(f"Maximum diameter {max_diameter} below minimum diameter {min_diameter}")
    pixels = _as_channels(image)
    height, width = pixels.shape[:2]
    x_center = int(x_center)
    y_center = int(y_center)

    sub_eff = max(1, min(sub_sampling, min((max_diameter - min_diameter) // 4, min_diameter // 2)))
    ring_sub = sub_eff
    max_diameter = max_diameter | 1
    min_diameter = max(3, min_diameter | 1)
    r = max_diameter // 2
    r0 = min_diameter // 2 - 1

    margin = min(x_center - r - 2, width - x_center - r - 2,
                 y_center - r - 2, height - y_center - r - 2)
    reach = min(margin, search_range // 2)
    if reach >= 0:
        reach = reach // sub_eff * sub_eff
    if reach < 0 or 2 * reach + 1 < search_range // 5:
        raise VisionError(
            f"Image too small for given parameters: {width}x{height}, center "
            f"({x_center}, {y_center}), max diameter {max_diameter}, search range {search_range}"
        )

    final_pass = sub_eff == 1 and (search_range <= ITERATION_RADIUS or super_sampling <= 1)
    if final_pass and super_sampling > 1:
        offsets = [s / super_sampling - 0.5 for s in range(super_sampling)]
    else:
        offsets = [0.0]

    steps = np.arange(-reach, reach + 1, sub_eff)
    dy_grid, dx_grid = np.meshgrid(steps, steps, indexing='ij')
    inside = dx_grid ** 2 + dy_grid ** 2 <= (reach + 1) ** 2
    cx = x_center + dx_grid[inside]
    cy = y_center + dy_grid[inside]

    score_best = -np.inf
    x_best = float(x_center)
    y_best = float(y_center)
    ri_best = 0
    for x_offset in offsets:
        for y_offset in offsets:
            rings = _build_rings(r, r0, ring_sub, x_offset, y_offset)
            n_samples = sum(len(dy) for _, dy, _ in rings) * pixels.shape[2]
            batch = max(1, _MAX_BATCH_SAMPLES // max(1, n_samples))
            for start in range(0, len(cx), batch):
                scores, ri_contrast = _score_candidates(
                    pixels, cx[start:start + batch], cy[start:start + batch], rings, min_diameter)
                i = int(np.argmax(scores))
                if scores[i] > score_best:
                    score_best = float(scores[i])
                    x_best = cx[start + i] + x_offset
                    y_best = cy[start + i] + y_offset
                    ri_best = int(ri_contrast[i])

    logger.debug(
        f"Best circular symmetry at subsampling {sub_eff}, reach {reach}: "
        f"score {score_best:.3f} at ({x_best:.2f}, {y_best:.2f})"
    )

    if not final_pass:
        return find_circular_symmetry(
            image, int(x_best), int(y_best), max_diameter, min_diameter,
            sub_eff * ITERATION_RADIUS, min_symmetry,
            sub_eff // ITERATION_DIVISION, super_sampling)

    if score_best <= min_symmetry:
        return None
    # The edge lies between the contrast ring and its inner neighbour.
    diameter = max(0, ri_best * 2 - ring_sub)
    return Circle(float(x_best), float(y_best), float(diameter))


class CircularSymmetryDetector:
    """
    Pipeline-style wrapper around find_circular_symmetry.

    Holds the stage settings and derives the diameter range and search
    distance from an expected feature size when the caller knows one.
    """

    def __init__(self,
                 min_diameter: int = 10,
                 max_diameter: int = 100,
                 max_distance: int = 100,
                 min_symmetry: float = 1.2,
                 sub_sampling: int = 8,
                 super_sampling: int = 1,
                 inner_margin: float = 0.4,
                 outer_margin: float = 0.2):
        """
        Initialize the detector.

        Args:
            min_diameter: Minimum circle diameter, in pixels
            max_diameter: Maximum circle diameter, in pixels
            max_distance: Maximum search distance from the nominal center, in pixels
            min_symmetry: Minimum relative circular symmetry
            sub_sampling: Initial pixel sub-sampling
            super_sampling: Final sub-pixel super-sampling
            inner_margin: Relative inner diameter margin for an expected diameter
            outer_margin: Relative outer diameter margin for an expected diameter
        """
        self.logger = logging.getLogger(__name__)
        self.min_diameter = min_diameter
        self.max_diameter = max_diameter
        self.max_distance = max_distance
        self.min_symmetry = min_symmetry
        self.sub_sampling = sub_sampling
        self.super_sampling = super_sampling
        self.inner_margin = inner_margin
        self.outer_margin = outer_margin

    def diameter_range(self, diameter_px: Optional[float] = None) -> Tuple[int, int]:
        """(min, max) diameter in pixels, widened around an expected diameter if given."""
        if diameter_px is not None and diameter_px > 0:
            return (_round_half_up(diameter_px * (1.0 - self.inner_margin)),
                    _round_half_up(diameter_px * (1.0 + self.outer_margin)))
        return self.min_diameter, self.max_diameter

    def detect(self, image: np.ndarray,
               center: Optional[Tuple[float, float]] = None,
               diameter_px: Optional[float] = None,
               max_distance_px: Optional[float] = None) -> List[Circle]:
        """
        Detect the most circular-symmetric feature.

        Args:
            image: Input image (BGR or grayscale)
            center: Nominal (x, y) pixel center; defaults to the image center
            diameter_px: Expected feature diameter in pixels, if known
            max_distance_px: Overrides the configured search distance

        Returns:
            A list with the best circle, or an empty list
        """
        height, width = np.shape(image)[:2]
        if center is None:
            center = (width * 0.5, height * 0.5)
        min_diameter, max_diameter = self.diameter_range(diameter_px)
        max_distance = self.max_distance
        if max_distance_px is not None and max_distance_px > 0:
            max_distance = _round_half_up(max_distance_px)

        circle = find_circular_symmetry(
            image, int(center[0]), int(center[1]), max_diameter, min_diameter,
            max_distance * 2, self.min_symmetry, self.sub_sampling, self.super_sampling)
        if circle is None:
            self.logger.debug("No circular symmetry above threshold")
            return []
        self.logger.debug(f"Detected circle at ({circle.x:.2f}, {circle.y:.2f}), diameter {circle.diameter:.1f}")
        return [circle]
