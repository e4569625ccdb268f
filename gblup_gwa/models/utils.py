import numpy as np
import pandas as pd
from scipy import stats

from ..models.errors import DegenerateMatrixError

#pylint: disable-msg=invalid-name

def relationship_matrix(z, reference_mean_diag=None):
    """Compute a relationship matrix from a block of standardized genotypes.

    The cross product is rescaled so that its mean diagonal equals
    ``reference_mean_diag``, which keeps relationship matrices built from
    different sets of markers proportional to each other.

    Parameters
    ----------
    z : ndarray, shape (m, n)
        Standardized genotypes of 'm' markers in 'n' samples

    reference_mean_diag : float, default=None
        Mean diagonal of the rescaled matrix. Set to None to skip rescaling.
    """

    z = np.asarray(z, dtype='float')
    if z.ndim != 2 or z.shape[0] == 0 or z.shape[1] == 0:
        raise DegenerateMatrixError("genotype block of shape %s has no markers "
                                    "or no samples"%(z.shape,))

    M = z.T @ z
    M = 0.5*(M + M.T)
    if reference_mean_diag is None:
        return M

    mean_diag = np.mean(np.diag(M))
    if not np.isfinite(mean_diag) or mean_diag <= 0:
        raise DegenerateMatrixError("relationship matrix has mean diagonal %s"%mean_diag)
    if not np.isfinite(reference_mean_diag) or reference_mean_diag <= 0:
        raise DegenerateMatrixError("reference mean diagonal %s is not positive"
                                    %reference_mean_diag)

    return M / mean_diag * reference_mean_diag

def boundary_pvalue(tst):
    """p-value of a likelihood ratio test for a single variance component.

    Under the null the statistic ``2*tst`` follows a 50:50 mixture of a point
    mass at zero and a chi-square with one degree of freedom.

    Parameters
    ----------
    tst : float
        Difference in log likelihood between the full and reduced models
    """

    return stats.chi2.sf(2*tst, 1) / 2

def percent_of_total(sigma):
    """Percentage of the total variance of each variance component"""

    total = sum(sigma.values())
    return pd.Series([100.*value/total for value in sigma.values()],
                     index=list(sigma.keys()))

def fixed_design(data, columns):
    """Build a fixed effect design matrix with an intercept.

    Numeric columns enter as covariates; other columns are treated as
    factors and dummy coded, dropping the first level.

    Parameters
    ----------
    data : DataFrame, shape (n, *)
        Records of 'n' samples

    columns : list
        Names of columns entering as fixed effects
    """

    blocks = [pd.DataFrame({'(Intercept)': np.ones(data.shape[0])}, index=data.index)]
    for column in columns:
        values = data[column]
        if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
            blocks.append(values.astype('float').to_frame(column))
        else:
            blocks.append(pd.get_dummies(values.astype('category'), prefix=column,
                                         drop_first=True).astype('float'))
    X = pd.concat(blocks, axis=1)
    return X.values, list(X.columns)

def incidence_covariance(values):
    """Covariance of a random factor, shape (n, n), as Z Z^T for its incidence matrix Z"""

    Z = pd.get_dummies(pd.Series(values).astype('category')).values.astype('float')
    return Z @ Z.T
