"""
Deviance-based feature selection for single-cell RNA-seq.

Implementation based on Townes et al. (2019):
"Feature selection and dimension reduction for single-cell RNA-Seq based on a multinomial model"
"""

from typing import Union

import numpy as np
import scipy.sparse as spr


def binomial_deviance(count_matrix: Union[np.ndarray, spr.spmatrix]) -> np.ndarray:
    """
    Binomial deviance of each gene against a constant-proportion null model.

    Under the null every cell expresses gene j with the same proportion
    p_j = sum_i x_ij / sum_ij x_ij, so the expected count is
    mu_ij = n_i * p_j with n_i the library size of cell i. The deviance is

        D_j = 2 * sum_i [ x_ij * log(x_ij / mu_ij)
                          + (n_i - x_ij) * log((n_i - x_ij) / (n_i - mu_ij)) ]

    with 0 * log(0) taken as 0. Genes whose expression tracks library size
    score near zero; genes concentrated in a subset of cells score high.

    Args:
        count_matrix: Cell x gene raw count matrix (sparse or dense)

    Returns:
        np.ndarray: Deviance per gene, shape (n_genes,)

    Reference:
        Townes, F. W., Hicks, S. C., Aryee, M. J., & Irizarry, R. A. (2019).
        Genome Biology, 20(1), 295. https://doi.org/10.1186/s13059-019-1861-6
    """
    if spr.issparse(count_matrix):
        X = np.asarray(count_matrix.todense(), dtype=np.float64)
    else:
        X = np.asarray(count_matrix, dtype=np.float64)

    cell_totals = X.sum(axis=1, keepdims=True)
    total_counts = cell_totals.sum()
    if total_counts == 0:
        return np.zeros(X.shape[1])

    p_null = X.sum(axis=0, keepdims=True) / total_counts
    expected = cell_totals * p_null
    remainder = cell_totals - X
    expected_remainder = cell_totals - expected

    with np.errstate(divide="ignore", invalid="ignore"):
        term_in = np.where(X > 0, X * np.log(X / expected), 0.0)
        term_out = np.where(
            remainder > 0, remainder * np.log(remainder / expected_remainder), 0.0
        )

    deviance = 2.0 * (term_in + term_out).sum(axis=0)
    return np.nan_to_num(np.maximum(deviance, 0.0))
