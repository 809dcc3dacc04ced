# reconguide/viewpoints/reconstructability.py

"""
Multi-view stereo reconstructability heuristic.

A pair of views of one surface point triangulates well when the angle
between the two viewing directions is neither too small (no parallax) nor
too large (matching breaks down):

    h(alpha) = sigmoid(k * (alpha - alpha_0)) * (1 - min(alpha / alpha_max, 1))
"""

import numpy as np

PARALLAX_STEEPNESS = 32.0
PARALLAX_MIDPOINT = np.pi / 16.0
MAX_TRIANGULATION_ANGLE = np.pi / 4.0


def pair_heuristic(alpha: np.ndarray) -> np.ndarray:
    """Reconstructability of a view pair separated by ``alpha`` radians."""
    alpha = np.asarray(alpha, dtype=np.float64)
    parallax = 1.0 / (1.0 + np.exp(-PARALLAX_STEEPNESS * (alpha - PARALLAX_MIDPOINT)))
    matchability = 1.0 - np.minimum(alpha / MAX_TRIANGULATION_ANGLE, 1.0)
    return parallax * matchability


def observation_quality(
    incidence: np.ndarray,
    directions: np.ndarray,
    prior_directions: np.ndarray,
    prior_counts: np.ndarray,
) -> np.ndarray:
    """
    Quality of observing each point along ``directions``.

    Parameters
    ----------
    incidence : (M,) array
        Cosine between point normal and viewing direction, in (0, 1].
    directions : (M, 3) array
        Unit viewing directions, point -> observer.
    prior_directions : (M, K, 3) array
        Directions already recorded for each point.
    prior_counts : (M,) array
        Number of valid entries in each row of ``prior_directions``.

    Returns
    -------
    np.ndarray
        (M,) float32, ``incidence * (1 + sum of pair heuristics)``.
    """
    incidence = np.asarray(incidence, dtype=np.float64)
    directions = np.asarray(directions, dtype=np.float64)
    prior_directions = np.asarray(prior_directions, dtype=np.float64)
    prior_counts = np.asarray(prior_counts)

    num_slots = prior_directions.shape[1]
    recorded = np.arange(num_slots)[np.newaxis, :] < prior_counts[:, np.newaxis]

    cosines = np.einsum("mkj,mj->mk", prior_directions, directions)
    alpha = np.arccos(np.clip(cosines, -1.0, 1.0))
    gain = np.where(recorded, pair_heuristic(alpha), 0.0).sum(axis=1)

    quality = np.clip(incidence, 0.0, 1.0) * (1.0 + gain)
    return np.nan_to_num(quality, nan=0.0, posinf=0.0, neginf=0.0).astype(np.float32)
