#!/usr/bin/env python3
r"""
Dual reference trajectory runner on a simulated planar telescope (headless-safe).

For every simulated track the runner

1. simulates crossings of a pixel/strip telescope (:mod:`dual_reco.simulation`),
2. fits them with a forward/backward Kalman smoother (:mod:`dual_reco.kalman`),
3. builds the dual trajectory around the anchor plane :math:`a`, with forward
   indices :math:`a, a+1, \dots, n-1` and backward indices
   :math:`a, a-1, \dots, 0`,
4. tabulates residuals and pulls (:mod:`dual_reco.metrics`).

With the unbiased method the pulls

.. math:: \text{pull}_k = \frac{m_k - t_k}{\sqrt{V_{kk}}}

should follow a unit Gaussian when the simulation matches the fit model.

CLI overview
------------
See :func:`build_parser`. Typical usage:

.. code-block:: bash

   dual-reco --config config.json -n 500 --residual-method 1 --plot
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping

import numpy as np
import pandas as pd

from dual_reco.config import DualTrajectoryConfig, load_config
from dual_reco.coordinator import DualTrajectoryCoordinator
from dual_reco.errors import ConfigurationError
from dual_reco.kalman import PlanarKalmanSmoother
from dual_reco.metrics import RESIDUAL_COLUMNS, residual_frame, summarize_pulls, validity_summary
from dual_reco.simulation import (
    build_telescope,
    hits_from_frame,
    random_track_parameters,
    seed_state,
    simulate_track,
)
from dual_reco.types import CombinedTrajectory

_RUN_KEYS = ("anchor_plane", "momentum_range")


def build_parser() -> argparse.ArgumentParser:
    r"""
    Create the command-line parser.

    Returns
    -------
    argparse.ArgumentParser
    """
    p = argparse.ArgumentParser(description="Build dual Kalman reference trajectories on simulated tracks.")
    p.add_argument("--config", type=str, default="config.json",
                   help="Path to JSON config with 'dual_config' and 'telescope_config' blocks.")
    p.add_argument("-n", "--n-tracks", type=int, default=200,
                   help="Number of simulated tracks.")
    p.add_argument("-s", "--seed", type=int, default=None,
                   help="Random seed for the simulation.")
    p.add_argument("-r", "--residual-method", type=int, default=None,
                   help="Override dual_config.residual_method (1 unbiased, 2 pull based).")
    p.add_argument("-a", "--anchor", type=int, default=None,
                   help="Override telescope_config.anchor_plane.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show pull and residual plots.")
    p.add_argument("--csv", type=str, default=None,
                   help="Write the residual table to this CSV file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Parameters
    ----------
    verbose : bool, optional
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.

    Notes
    -----
    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S`` timestamps.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Enforce a **headless-safe** Matplotlib configuration when plotting is disabled.

    Must be called **before** importing :mod:`dual_reco.plotting`.

    Parameters
    ----------
    enable_plots : bool
        If ``False``, set backend to ``'Agg'`` (non-interactive), turn off
        interactive mode, and neutralize ``plt.show()``.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt  # noqa: WPS433
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def split_telescope_config(block: Mapping[str, Any]) -> tuple[Dict[str, Any], Dict[str, Any]]:
    """Separate run settings (anchor, momentum range) from geometry keywords."""
    geometry = {k: v for k, v in block.items() if k not in _RUN_KEYS}
    run = {k: block[k] for k in _RUN_KEYS if k in block}
    return geometry, run


def run_tracks(config: DualTrajectoryConfig,
               telescope_block: Mapping[str, Any],
               n_tracks: int,
               rng: np.random.Generator,
               anchor: int | None = None) -> tuple[List[CombinedTrajectory], pd.DataFrame]:
    r"""
    Simulate, smooth and construct ``n_tracks`` dual trajectories.

    Parameters
    ----------
    config : DualTrajectoryConfig
    telescope_block : mapping
        ``telescope_config`` block: :func:`build_telescope` keywords plus
        ``anchor_plane`` and ``momentum_range``.
    n_tracks : int
    rng : numpy.random.Generator
    anchor : int, optional
        Overrides ``anchor_plane``.

    Returns
    -------
    (list of CombinedTrajectory, pandas.DataFrame)
        All results (valid or not) and the concatenated residual table.

    Raises
    ------
    ConfigurationError
        If the anchor plane lies outside the telescope.
    """
    geometry, run = split_telescope_config(telescope_block)
    telescope = build_telescope(**geometry)
    n = telescope.n_planes
    a = int(anchor if anchor is not None else run.get("anchor_plane", n // 2))
    if not 0 <= a < n:
        raise ConfigurationError(f"anchor plane {a} outside 0..{n - 1}")
    momentum_range = tuple(run.get("momentum_range", (2.0, 20.0)))

    field = config.make_field()
    smoother = PlanarKalmanSmoother(field, mass=config.mass, material_effects=config.material_effects)
    coordinator = DualTrajectoryCoordinator.from_config(config)
    forward_indices = list(range(a, n))
    backward_indices = list(range(a, -1, -1))

    results: List[CombinedTrajectory] = []
    frames: List[pd.DataFrame] = []
    for track_id in range(n_tracks):
        truth = random_track_parameters(rng, momentum_range)
        sim = simulate_track(telescope, truth, field, rng, mass=config.mass,
                             material_effects=config.material_effects,
                             first_hit_id=track_id * n)
        hits = hits_from_frame(sim, telescope)
        measurements = smoother.smooth(hits, seed_state(telescope, truth[0]))
        reference = measurements[a].updated
        traj = coordinator.construct(measurements, reference, forward_indices, backward_indices, field)
        results.append(traj)
        if traj.is_valid:
            frames.append(residual_frame(traj, track_id))
        else:
            logging.debug("Track %d invalid: %s", track_id, traj.failure)
    if frames:
        table = pd.concat(frames, ignore_index=True)
    else:
        table = pd.DataFrame(columns=list(RESIDUAL_COLUMNS))
    return results, table


def main() -> None:
    r"""
    End-to-end pipeline: **config → simulate → smooth → construct → summarize**.

    Pipeline
    --------
    1. Parse CLI (:func:`build_parser`) and set up logging (:func:`setup_logging`).
    2. Enforce headless plotting guard (:func:`apply_plotting_guard`).
    3. Load config (:func:`dual_reco.config.load_config`) and apply CLI overrides.
    4. Run :func:`run_tracks`.
    5. Log validity counts and the pull summary; optionally write CSV and plot.
    """
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    cfg_path = Path(args.config)
    logging.info("Reading config from %s", cfg_path)
    cfg = load_config(cfg_path)
    dual_block = dict(cfg.get("dual_config", {}))
    if args.residual_method is not None:
        dual_block["residual_method"] = args.residual_method
    config = DualTrajectoryConfig.from_mapping(dual_block)
    logging.info("Residual method: %s  |  Material: %s  |  Field: %s T",
                 config.residual_method.name, config.material_effects.value, config.field_tesla)

    rng = np.random.default_rng(args.seed)
    t0 = time.perf_counter()
    results, table = run_tracks(config, cfg.get("telescope_config", {}), args.n_tracks, rng, args.anchor)
    t1 = time.perf_counter()

    logging.info("Built %d dual trajectories in %.2f s", len(results), t1 - t0)
    for k, v in validity_summary(results).items():
        logging.info("  %s: %d", k, v)
    if table.empty:
        logging.warning("No valid trajectories; nothing to summarize.")
        return
    for row in summarize_pulls(table).to_dict("records"):
        logging.info("  subdet %d coord %d: pull mean %.3f  std %.3f  (n=%d)",
                     row["subdet_id"], row["coordinate"], row["mean"], row["std"], row["count"])

    if args.csv:
        table.to_csv(args.csv, index=False)
        logging.info("Wrote residual table to %s", args.csv)
    if args.plot:
        import dual_reco.plotting as dual_plot  # noqa: WPS433
        dual_plot.plot_pulls(table, title=f"Pulls ({config.residual_method.name.lower()})")
        dual_plot.plot_residuals_by_plane(table)


if __name__ == "__main__":
    main()
