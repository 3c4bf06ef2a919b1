from __future__ import annotations

from typing import Tuple

import numpy as np
from numba import njit
from scipy.linalg import LinAlgError, cho_factor, cho_solve


__all__ = [
    "similarity",
    "kalman_gain",
    "combine_gaussian",
]


def _robust_cholesky_numpy(S: np.ndarray) -> np.ndarray:
    r"""
    Robust Cholesky factorization with small diagonal *jitter* and SPD fallback.

    Attempts ``np.linalg.cholesky(S)``; on failure, retries with
    :math:`S+\varepsilon I` where :math:`\varepsilon` is escalated
    geometrically. If all retries fail, an eigenvalue floor is applied:

    .. math::
        S_\text{fix} = V\;\mathrm{diag}(\max(w,\; w_\max\,10^{-15}))\;V^\top.

    Parameters
    ----------
    S : ndarray, shape (m, m)
        Symmetric innovation covariance (not necessarily strictly SPD).

    Returns
    -------
    L : ndarray, shape (m, m)
        Lower-triangular factor with :math:`S_\text{spd}=L L^\top`.
    """
    try:
        return np.linalg.cholesky(S)
    except np.linalg.LinAlgError:
        I = np.eye(S.shape[0], dtype=S.dtype)
        eps = 1e-12 * max(1.0, float(np.max(np.abs(np.diag(S)))))
        for _ in range(8):
            try:
                return np.linalg.cholesky(S + eps * I)
            except np.linalg.LinAlgError:
                eps *= 10.0
        w, V = np.linalg.eigh(S)
        w = np.clip(w, w.max() * 1e-15, None)
        S_fix = (V * w) @ V.T
        return np.linalg.cholesky(S_fix)


def kalman_gain(P_pred: np.ndarray, H: np.ndarray, S: np.ndarray) -> np.ndarray:
    r"""
    Kalman gain via Cholesky solves: :math:`K = P^- H^\top S^{-1}`.

    Parameters
    ----------
    P_pred : ndarray, shape (n, n)
        Predicted covariance :math:`P^-`.
    H : ndarray, shape (m, n)
        Projection onto the measured coordinates.
    S : ndarray, shape (m, m)
        Innovation covariance :math:`S = H P^- H^\top + R`.

    Returns
    -------
    K : ndarray, shape (n, m)

    Notes
    -----
    Solves :math:`L\,Y = (P^- H^\top)^\top` and :math:`L^\top X = Y`, then
    returns :math:`K = X^\top`; :math:`S` is never inverted explicitly.
    """
    P_pred = np.asarray(P_pred, dtype=np.float64, order="C")
    H = np.asarray(H, dtype=np.float64, order="C")
    S = np.asarray(S, dtype=np.float64, order="C")

    L = _robust_cholesky_numpy(S)
    PHt = P_pred @ H.T                         # (n,m)
    Y = np.linalg.solve(L, PHt.T)              # (m,n)
    X = np.linalg.solve(L.T, Y)                # (m,n)
    return X.T


@njit(cache=True)
def _similarity_numba(D: np.ndarray, C: np.ndarray) -> np.ndarray:
    n, m = D.shape
    DC = np.zeros((n, m))
    for i in range(n):
        for k in range(m):
            acc = 0.0
            for j in range(m):
                acc += D[i, j] * C[j, k]
            DC[i, k] = acc
    out = np.empty((n, n))
    for i in range(n):
        for k in range(i, n):
            acc = 0.0
            for j in range(m):
                acc += DC[i, j] * D[k, j]
            out[i, k] = acc
            out[k, i] = acc
    return out


def similarity(D: np.ndarray, C: np.ndarray) -> np.ndarray:
    r"""
    Similarity transform :math:`D\,C\,D^\top`.

    Parameters
    ----------
    D : ndarray, shape (n, m)
        Linear map (e.g. trajectory derivatives).
    C : ndarray, shape (m, m)
        Symmetric covariance.

    Returns
    -------
    ndarray, shape (n, n)
        Exactly symmetric result (upper triangle mirrored).
    """
    D = np.ascontiguousarray(D, dtype=np.float64)
    C = np.ascontiguousarray(C, dtype=np.float64)
    if D.ndim != 2 or C.shape != (D.shape[1], D.shape[1]):
        raise ValueError(f"cannot transform covariance {C.shape} with map {D.shape}")
    return _similarity_numba(D, C)


def combine_gaussian(x1: np.ndarray, C1: np.ndarray,
                     x2: np.ndarray, C2: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    Precision-weighted average of two independent Gaussian estimates.

    With :math:`K = C_1 (C_1 + C_2)^{-1}`:

    .. math::

        x = x_1 + K (x_2 - x_1), \qquad C = C_1 - K C_1 .

    Raises
    ------
    scipy.linalg.LinAlgError
        If :math:`C_1 + C_2` is not positive definite.
    ValueError
        If :math:`C_1 + C_2` contains ``inf`` or ``nan``.
    """
    x1 = np.asarray(x1, dtype=np.float64)
    x2 = np.asarray(x2, dtype=np.float64)
    C1 = np.asarray(C1, dtype=np.float64)
    C2 = np.asarray(C2, dtype=np.float64)
    factor = cho_factor(C1 + C2)
    # (C1+C2)^{-1} C1 transposed is C1 (C1+C2)^{-1}
    K = cho_solve(factor, C1).T
    x = x1 + K @ (x2 - x1)
    C = C1 - K @ C1
    C = 0.5 * (C + C.T)
    if not np.all(np.isfinite(C)) or np.any(np.diag(C) < 0.0):
        raise LinAlgError("combined covariance is not positive semi-definite")
    return x, C
