from collections import OrderedDict, namedtuple

import numpy as np
import pandas as pd

from .. import data_io
from ..models import utils
from ..models.errors import DegenerateMatrixError, FitError, RefitInstabilityError
from ..models.regress import regress, refit

GENETIC = 'G'
BACKGROUND = 'G_bkg'
LLIK_TOL = 1e-4
PEAK_SPLIT = (0.75, 0.25)
REFIT_OPTIONS = ('tol', 'maxiter', 'max_time')

LRTResult = namedtuple('LRTResult', ['pvalue', 'llik', 'vars'])


def _align(matrix, data, positions, term):

    """Subset a covariance matrix to the retained records of ``data``.
    DataFrames are aligned by label, arrays by position.
    """

    if isinstance(matrix, pd.DataFrame):
        samples = data.index[positions]
        missing = [sample for sample in samples if sample not in matrix.index]
        if missing:
            raise FitError("covariance term '%s' is missing %d samples, e.g. %s"
                           %(term, len(missing), missing[0]))
        return matrix.loc[samples, samples].values.astype('float')

    matrix = np.asarray(matrix, dtype='float')
    if matrix.shape != (data.shape[0], data.shape[0]):
        raise FitError("covariance term '%s' has shape %s, expected (%d, %d)"
                       %(term, matrix.shape, data.shape[0], data.shape[0]))
    return matrix[positions, :][:, positions]

def gblup(response, data, design, G, extra_covariances=None, weights=None, **fitter_options):

    """Fit a GBLUP model

    Parameters
    ----------
    response : str
        Name of the response column in ``data``. If a list, the first
        element is used.

    data : DataFrame, shape (n, *)
        Records of 'n' samples, indexed by sample id, with the response and
        the classification factors used as fixed or random effects

    design : dict
        'fixed': list of columns entering as fixed effects,
        'random': list of factor columns entering as random effects

    G : DataFrame or ndarray, shape (n, n)
        Genomic relationship matrix

    extra_covariances : dict, default=None
        Proportional covariance matrices of additional random effects,
        keyed by component name

    weights : Series, ndarray or DataFrame, default=None
        Values proportional to the residual variance of each sample;
        a DataFrame holds one column of weights per response

    fitter_options : dict
        Passed on to :func:`regress`
    """

    if not isinstance(response, str):
        response = list(response)[0]
    design = design or {}

    y = pd.to_numeric(data[response], errors='coerce').values.astype('float')
    positions = np.where(np.isfinite(y))[0]
    records = data.iloc[positions]

    X, fixed_names = utils.fixed_design(records, design.get('fixed', []))

    covariances = OrderedDict()
    covariances[GENETIC] = _align(G, data, positions, GENETIC)
    for term in design.get('random', []):
        covariances[term] = utils.incidence_covariance(records[term].values)
    for term, matrix in (extra_covariances or {}).items():
        covariances[term] = _align(matrix, data, positions, term)

    if weights is not None:
        if isinstance(weights, pd.DataFrame):
            weights = weights[response]
        if isinstance(weights, pd.Series):
            weights = weights.loc[records.index].values
        else:
            weights = np.asarray(weights, dtype='float').ravel()[positions]

    return regress(y[positions], X, covariances, weights=weights,
                   fixed_names=fixed_names, samples=list(records.index),
                   positions=positions, n_records=data.shape[0], name=response,
                   **fitter_options)

def lrt(gb, component=GENETIC, llik_tol=LLIK_TOL, **fitter_options):

    """Likelihood ratio test of a variance component being zero

    Parameters
    ----------
    gb : FittedModel
        Full model

    component : str, default='G'
        Name of the variance component to test

    llik_tol : float
        Largest decrease in log likelihood of the reduced model, relative
        to the full model, attributed to numerical error

    fitter_options : dict
        Optimizer bounds (tol, maxiter, max_time) of the reduced fit

    Returns
    -------
    LRTResult
        pvalue : p-value of the test
        llik : log likelihood of the full and reduced models, and their difference
        vars : variance components under the full and reduced models, and
               their percentage of the total under the full model
    """

    sigma = gb.sigma
    if component not in sigma:
        raise ValueError("model has no variance component '%s'"%component)
    start = OrderedDict((term, value) for term, value in sigma.items() if term != component)
    if len(start) == 0:
        raise ValueError("no variance component left after removing '%s'"%component)

    reduced = refit(gb.model.drop(component), start=start,
                    label="reduced model (without '%s')"%component,
                    **_refit_options(fitter_options))

    tst = gb.llik - reduced.llik
    if tst < -llik_tol:
        raise RefitInstabilityError(gb.llik, reduced.llik)
    pvalue = utils.boundary_pvalue(tst)

    s1 = pd.Series(sigma)
    s2 = pd.Series(np.nan, index=s1.index)
    s2[list(start.keys())] = list(reduced.sigma.values())
    likelihoods = pd.DataFrame({'full': [gb.llik], 'red': [reduced.llik], 'dif': [tst]})
    variances = pd.DataFrame({'full': s1, 'reduced': s2,
                              'perc_full': utils.percent_of_total(sigma)})

    return LRTResult(pvalue, likelihoods, variances)

def _refit_options(fitter_options):

    """Optimizer bounds among fitter options; the rest is fixed by the fitted model"""

    return {key: value for key, value in fitter_options.items() if key in REFIT_OPTIONS}

def _genotype_block(x, model):

    """Standardized genotypes of the fitted samples, and the marker ids"""

    if isinstance(x, pd.DataFrame):
        missing = [sample for sample in model.samples if sample not in x.columns]
        if missing:
            raise ValueError("genotypes are missing %d samples, e.g. %s"
                             %(len(missing), missing[0]))
        return x.loc[:, model.samples].values.astype('float'), list(x.index)

    x = np.asarray(x, dtype='float')
    if x.ndim != 2:
        raise ValueError("genotypes should be a matrix of markers by samples")
    if x.shape[1] != model.N:
        if model.positions is None or x.shape[1] != model.n_records:
            raise ValueError("genotypes have %d samples, expected %d fitted or %d records"
                             %(x.shape[1], model.N, model.n_records))
        x = x[:, model.positions]
    return x, list(range(x.shape[0]))

def gwas(gb, x, component=GENETIC):

    """Estimate marker effects and their variances from a GBLUP model

    The genomic predictions u = sigma_G G P y are transformed into marker
    effects x G^-1 u / k, where k relates G to the marker cross product
    x^T x. Effect variances are the diagonal of the corresponding
    transformation of Var(u).

    Parameters
    ----------
    gb : FittedModel
        Fitted GBLUP model

    x : DataFrame or ndarray, shape (m, n)
        Standardized genotypes of 'm' markers in 'n' samples

    component : str, default='G'
        Name of the genomic variance component

    Returns
    -------
    DataFrame, shape (m, 2)
        'ghat': estimated marker effects, 'varg': their variances
    """

    x, markers = _genotype_block(x, gb.model)
    if x.shape[0] == 0:
        raise DegenerateMatrixError("genotype block has no markers")
    kinship = gb.model.covariances[component]
    k = np.mean(np.sum(x**2, 0)) / np.mean(np.diag(kinship))
    if not np.isfinite(k) or k <= 0:
        raise DegenerateMatrixError("cannot relate genotypes to relationship "
                                    "matrix (scale %s)"%k)

    sigma_g = gb.sigma[component]
    P = gb.P
    xP = x @ P
    ghat = sigma_g / k * (xP @ gb.model.y).ravel()
    varg = sigma_g**2 / k**2 * np.sum(xP*x, 1)

    return pd.DataFrame({'ghat': ghat, 'varg': varg}, index=markers)

def zscores(gw):

    """Reduce marker effects and variances to z-statistics"""

    zscore = gw['ghat'] / np.sqrt(gw['varg'])
    zscore.name = 'z'
    return zscore

def run_association(response, data, design, G, extra_covariances=None, weights=None,
                    genotypes=None, run_lrt=False, threshold=0.01, return_zscore=True,
                    persist_model=False, persist_basename='', **fitter_options):

    """Fit a GBLUP model followed by genome-wide association

    Parameters
    ----------
    response, data, design, G, extra_covariances, weights :
        See :func:`gblup`

    genotypes : DataFrame or ndarray, shape (m, n)
        Standardized genotypes of 'm' markers in 'n' samples

    run_lrt : bool, default=False
        Test the genomic variance component before association

    threshold : float, default=0.01
        Significance threshold of the likelihood ratio test

    return_zscore : bool, default=True
        Return z-statistics instead of marker effects and variances

    persist_model : bool, default=False
        Save fixed effects and variance components of the GBLUP fit

    persist_basename : str
        Prefix of the saved file name

    Returns
    -------
    Series, DataFrame or None
        z-statistics keyed by marker, or marker effects and variances;
        None if the genomic variance is not significant
    """

    if genotypes is None:
        raise ValueError("genotypes are required for association")

    gb = gblup(response, data, design, G, extra_covariances=extra_covariances,
               weights=weights, **fitter_options)
    if persist_model:
        fname = data_io.save_model(gb, persist_basename)
        print("saved gblup to %s"%fname)
    print("done with gblup...")

    if run_lrt:
        print("performing LRT...")
        pvalue = lrt(gb, **fitter_options).pvalue
        if pvalue > threshold:
            print("LRT p-value %.4g above threshold %.4g, skipping association"%(pvalue, threshold))
            return None

    print("performing association...")
    gw = gwas(gb, genotypes)
    if return_zscore:
        return zscores(gw)
    return gw

def test_peak(gb, x, peak_pos=None, **fitter_options):

    """Likelihood ratio test of a QTL peak, given genome-wide background

    The relationship matrix of the peak markers, rescaled to the mean
    diagonal of the genomic relationship matrix, enters the model as 'G'
    alongside the original matrix, renamed 'G_bkg'. The peak component is
    then tested keeping the background component in both models.

    Parameters
    ----------
    gb : FittedModel
        Fitted GBLUP model

    x : DataFrame or ndarray, shape (m, n)
        Standardized genotypes of 'm' markers in 'n' samples

    peak_pos : array-like, default=None
        Markers capturing the QTL peak: positions, a boolean mask or marker
        ids. If None, all markers are used, which tests the total genomic
        variance against itself and is not informative.

    fitter_options : dict
        Optimizer bounds (tol, maxiter, max_time) of the peak and reduced
        fits; the likelihood mode and design are those of ``gb``

    Returns
    -------
    LRTResult
        See :func:`lrt`
    """

    if BACKGROUND in gb.sigma:
        raise ValueError("model already has a '%s' component"%BACKGROUND)

    x, markers = _genotype_block(x, gb.model)
    if peak_pos is None:
        print("no peak markers given, using all %d markers as the peak"%len(markers))
        z = x
    else:
        peak_pos = np.asarray(peak_pos)
        if peak_pos.size == 0:
            indices = np.zeros(0, dtype='int')
        elif peak_pos.dtype == bool:
            indices = np.where(peak_pos)[0]
        elif np.issubdtype(peak_pos.dtype, np.integer):
            indices = peak_pos
        else:
            indices = pd.Index(markers).get_indexer(peak_pos)
            if np.any(indices < 0):
                raise KeyError("unknown peak markers %s"%list(peak_pos[indices < 0]))
        if np.unique(indices).size == len(markers):
            print("peak spans all %d markers"%len(markers))
        z = x[indices, :]

    background = gb.model.covariances[GENETIC]
    Gpeak = utils.relationship_matrix(z, np.mean(np.diag(background)))

    covariances = OrderedDict()
    start = OrderedDict()
    sigma = gb.sigma
    for term, kinship in gb.model.covariances.items():
        if term == GENETIC:
            covariances[BACKGROUND] = background
            covariances[GENETIC] = Gpeak
            start[BACKGROUND] = sigma[GENETIC]*PEAK_SPLIT[0]
            start[GENETIC] = sigma[GENETIC]*PEAK_SPLIT[1]
        else:
            covariances[term] = kinship
            start[term] = sigma[term]

    rg = refit(gb.model.replace(covariances), start=start, label='peak model',
               **_refit_options(fitter_options))
    return lrt(rg, component=GENETIC, **fitter_options)
