from __future__ import annotations

from typing import Optional

import numpy as np
from sklearn.gaussian_process.kernels import Matern


def matern52_correlation(
    X1: np.ndarray,
    X2: Optional[np.ndarray],
    length_scales: np.ndarray,
) -> np.ndarray:
    """
    Anisotropic Matérn-5/2 correlation matrix between rows of X1 and X2,
    equal to 1 at zero distance. X2=None gives the symmetric matrix on X1.
    """
    X1 = np.atleast_2d(np.asarray(X1, dtype=float))
    ls = np.asarray(length_scales, dtype=float).reshape(-1)
    if ls.shape[0] != X1.shape[1]:
        raise ValueError(
            f"Need one length-scale per input dimension ({X1.shape[1]}), got {ls.shape[0]}."
        )
    if not np.all(np.isfinite(ls)) or np.any(ls <= 0):
        raise ValueError("length_scales must be finite and > 0.")
    kernel = Matern(length_scale=ls, nu=2.5)
    if X2 is None:
        return kernel(X1)
    return kernel(X1, np.atleast_2d(np.asarray(X2, dtype=float)))


def coincident(X1: np.ndarray, X2: np.ndarray) -> np.ndarray:
    """Boolean (n1, n2) matrix marking identical input rows."""
    X1 = np.atleast_2d(np.asarray(X1, dtype=float))
    X2 = np.atleast_2d(np.asarray(X2, dtype=float))
    return np.all(X1[:, None, :] == X2[None, :, :], axis=-1)
