import logging
from typing import Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt


def _show_and_close(fig, *, do_show: bool = True) -> None:
    r"""
    Show a Matplotlib figure (optionally) and always close it.

    Parameters
    ----------
    fig : matplotlib.figure.Figure
        Figure object to display and close.
    do_show : bool, optional
        If ``True`` (default) call ``plt.show()`` before closing.
    """
    fig.tight_layout()
    if do_show:
        plt.show()
    plt.close(fig)


def plot_pulls(frame: pd.DataFrame, bins: int = 50, title: Optional[str] = None,
               show: bool = True, save_path: Optional[str] = None) -> None:
    r"""
    Pull histograms per ``(subdet_id, coordinate)`` with a unit Gaussian overlay.

    Parameters
    ----------
    frame : pandas.DataFrame
        Output of :func:`dual_reco.metrics.residual_frame` (possibly concatenated
        over many tracks).
    bins : int, optional
        Histogram bins over :math:`[-5, 5]`.
    title : str, optional
    show : bool, optional
    save_path : str, optional
        Write the figure to this path before showing.
    """
    data = frame.dropna(subset=["pull"])
    if data.empty:
        logging.warning("No pulls to plot.")
        return
    groups = list(data.groupby(["subdet_id", "coordinate"]))
    fig, axes = plt.subplots(1, len(groups), figsize=(4.5 * len(groups), 4), squeeze=False)
    grid = np.linspace(-5.0, 5.0, 201)
    gauss = np.exp(-0.5 * grid ** 2) / np.sqrt(2.0 * np.pi)
    for ax, ((subdet, coord), g) in zip(axes[0], groups):
        pulls = g["pull"].to_numpy()
        ax.hist(pulls, bins=bins, range=(-5.0, 5.0), density=True, alpha=0.6)
        ax.plot(grid, gauss, "k--", lw=1)
        ax.set_title(f"subdet {subdet}, coord {coord}\n"
                     f"mean {pulls.mean():.3f}  std {pulls.std(ddof=1) if pulls.size > 1 else 0.0:.3f}")
        ax.set_xlabel("pull")
    if title:
        fig.suptitle(title)
    if save_path:
        fig.savefig(save_path, dpi=120)
    _show_and_close(fig, do_show=show)


def plot_residuals_by_plane(frame: pd.DataFrame, show: bool = True,
                            save_path: Optional[str] = None) -> None:
    r"""
    Residual spread per sensor: median and central 68% band in micrometers.
    """
    if frame.empty:
        logging.warning("No residuals to plot.")
        return
    stats = (frame.assign(res_um=frame["residual"] * 1e6)
             .groupby(["det_id", "coordinate"])["res_um"]
             .quantile([0.16, 0.5, 0.84])
             .unstack())
    fig, ax = plt.subplots(figsize=(7, 4))
    for coord, g in stats.groupby(level="coordinate"):
        det = g.index.get_level_values("det_id").to_numpy()
        med = g[0.5].to_numpy()
        ax.errorbar(det + 0.1 * coord, med,
                    yerr=[med - g[0.16].to_numpy(), g[0.84].to_numpy() - med],
                    fmt="o", capsize=3, label=f"coordinate {coord}")
    ax.axhline(0.0, color="k", lw=0.8)
    ax.set_xlabel("det_id")
    ax.set_ylabel(r"residual [$\mu$m]")
    ax.legend()
    if save_path:
        fig.savefig(save_path, dpi=120)
    _show_and_close(fig, do_show=show)
