import functools
import time
from collections import OrderedDict

import numpy as np
import pandas as pd
import scipy.optimize as opt

from ..models.errors import FitError

TOL = 1e-8
EPS = 1e-8
MAXITER = 1000
RESIDUAL = 'In'

class Core:

    """
    Model core enables efficient computation of likelihood
    and gradients by maintaining the current parameter state

    Parameters
    ----------
    X : ndarray, shape (n, c)
        Matrix of fixed effect covariates, where 'n' is the number of
        samples and 'c' is the number of covariates.

    kinships : list of ndarray, shape (n, n)
        Proportional covariance matrices, one per variance component

    reml : bool, default=True
        Evaluate the restricted likelihood instead of the full likelihood
    """

    def __init__(self, X, kinships, reml=True):

        self._X = X
        self.N, self.C = X.shape
        self._kinships = kinships
        self.reml = reml
        self.h = None

    def likelihood(self, h, Y):

        """Compute log likelihood

        Parameters
        ----------
        h : ndarray, shape (p, )
            values for 'p' variance components

        Y : ndarray, shape (n, 1)
            phenotype values for 'n' samples
        """

        if self.h is None or not np.array_equal(h, self.h):
            self._set_state(h)

        quad = np.sum(Y.T @ self._P @ Y)
        if self.reml:
            L = -0.5*((self.N-self.C)*np.log(2*np.pi) + \
                      self._logdet_H + \
                      self._logdet_XHX + \
                      quad)
        else:
            L = -0.5*(self.N*np.log(2*np.pi) + \
                      self._logdet_H + \
                      quad)

        return L

    def function(self, h, Y):

        """Compute function (- log likelihood) to be minimized"""

        return -self.likelihood(h, Y)

    def gradient(self, h, Y):

        """Compute gradient of -log likelihood

        Parameters
        ----------
        h : ndarray, shape (p, )
            values for 'p' variance components

        Y : ndarray, shape (n, 1)
            phenotype values for 'n' samples
        """

        if self.h is None or not np.array_equal(h, self.h):
            self._set_state(h)

        # tr(A K) for symmetric K
        A = self._P if self.reml else self._Hinv
        PY = self._P @ Y
        dL = 0.5*np.array([np.sum(A*kinship) - np.sum(PY.T @ kinship @ PY)
                           for kinship in self._kinships])

        return dL

    def _set_state(self, h):

        """Recompute intermediate variables, when the model parameters change"""

        h = np.array(h, dtype='float')
        self._H = functools.reduce(lambda u, v: u+v,
                                   [x_*k_ for x_, k_ in zip(h, self._kinships)])
        sign, self._logdet_H = np.linalg.slogdet(self._H)
        if sign <= 0:
            raise np.linalg.LinAlgError("covariance matrix is singular at variance components %s"
                                        %np.array2string(h))
        Hinv = np.linalg.inv(self._H)
        XHX = self._X.T @ Hinv @ self._X
        _, self._logdet_XHX = np.linalg.slogdet(XHX)
        self._XHXinv = np.linalg.inv(XHX)
        self._P = Hinv - Hinv @ self._X @ self._XHXinv @ self._X.T @ Hinv
        self._Hinv = Hinv
        self.h = h


class Model:

    """Design context of a mixed model: everything needed to refit it

    Parameters
    ----------
    y : ndarray, shape (n, 1)
        Response values for 'n' samples

    X : ndarray, shape (n, c)
        Fixed effect design matrix

    covariances : OrderedDict
        Proportional covariance matrices, shape (n, n), keyed by
        variance component name

    fixed_names : list, default=None
        Names of the columns of X

    samples : list, default=None
        Sample identifiers, in the order of the rows of y

    positions : ndarray, default=None
        Row positions of the samples in the table they were drawn from

    n_records : int, default=None
        Number of rows of that table

    name : str, default=None
        Name of the response

    reml : bool, default=True
        Use the restricted likelihood
    """

    def __init__(self, y, X, covariances, fixed_names=None, samples=None,
                 positions=None, n_records=None, name=None, reml=True):

        self.y = y
        self.X = X
        self.covariances = OrderedDict(covariances)
        self.N = y.shape[0]
        self.fixed_names = fixed_names if fixed_names is not None \
            else ['X%d'%c for c in range(X.shape[1])]
        self.samples = samples if samples is not None else list(range(self.N))
        self.positions = positions
        self.n_records = n_records if n_records is not None else self.N
        self.name = name if name is not None else 'y'
        self.reml = reml

    def replace(self, covariances):

        """Return a copy of the model with a new set of covariance matrices"""

        return Model(self.y, self.X, covariances, fixed_names=self.fixed_names,
                     samples=self.samples, positions=self.positions,
                     n_records=self.n_records, name=self.name, reml=self.reml)

    def drop(self, term):

        """Return a copy of the model without one covariance matrix"""

        return self.replace(OrderedDict((name, kinship)
                                        for name, kinship in self.covariances.items()
                                        if name != term))


class FittedModel:

    """Mixed model at its fitted variance components

    Attributes
    ----------

    sigma : OrderedDict
        Variance component estimates, keyed by component name

    llik : float
        Log likelihood (restricted, if the model uses REML) at the estimates

    model : Model
        Design context used for the fit

    beta : Series
        Generalized least squares estimates of the fixed effects

    beta_serr : Series
        Standard errors of the fixed effect estimates

    iterations : int
        Number of optimizer iterations
    """

    def __init__(self, model, sigma, llik, core, iterations=None):

        self._sigma = OrderedDict(sigma)
        self.llik = llik
        self.model = model
        self.iterations = iterations

        self._P = core._P
        beta = core._XHXinv @ model.X.T @ core._Hinv @ model.y
        self.beta = pd.Series(beta.ravel(), index=model.fixed_names)
        self.beta_serr = pd.Series(np.sqrt(np.diag(core._XHXinv)), index=model.fixed_names)

    @property
    def sigma(self):
        return OrderedDict(self._sigma)

    @property
    def P(self):
        return self._P.copy()

    def blup(self, term='G'):

        """Best linear unbiased predictions of a random effect

        Parameters
        ----------
        term : str, default='G'
            Name of the variance component
        """

        kinship = self.model.covariances[term]
        u = self._sigma[term] * kinship @ self._P @ self.model.y
        return pd.Series(u.ravel(), index=self.model.samples, name=term)

    def summary(self):

        """Fixed effect estimates and variance components of the fit"""

        return {'name': self.model.name,
                'fixed': pd.DataFrame({'estimate': self.beta,
                                       'serr': self.beta_serr}),
                'sigma': pd.Series(self._sigma),
                'llik': self.llik,
                'reml': self.model.reml}


def _check_covariance(term, kinship, N, label):

    kinship = np.asarray(kinship, dtype='float')
    if kinship.shape != (N, N):
        raise FitError("%s: covariance term '%s' has shape %s, expected (%d, %d)"
                       %(label, term, kinship.shape, N, N))
    if not np.all(np.isfinite(kinship)):
        raise FitError("%s: covariance term '%s' has non-finite entries"%(label, term))
    if not np.allclose(kinship, kinship.T):
        raise FitError("%s: covariance term '%s' is not symmetric"%(label, term))
    kinship = 0.5*(kinship + kinship.T)
    eigvals = np.linalg.eigvalsh(kinship)
    if eigvals[0] < -EPS*max(1., np.abs(eigvals).max()):
        raise FitError("%s: covariance term '%s' is not positive semi-definite "
                       "(smallest eigenvalue %.3g)"%(label, term, eigvals[0]))
    return kinship

def _check_full_likelihood(X, covariances, label):

    """The full likelihood has no maximum when every direction left
    uncovered by the non-residual terms lies in the span of the fixed
    effects: the residual variance then collapses to zero. This is the
    case of a centred genomic relationship matrix with an intercept.
    """

    # residual metric
    scale = 1/np.sqrt(np.diag(covariances[RESIDUAL]))
    others = [kinship for term, kinship in covariances.items() if term != RESIDUAL]
    if len(others) == 0:
        return
    K = scale[:, None] * sum(others) * scale[None, :]
    eigvals, eigvecs = np.linalg.eigh(K)
    null = eigvecs[:, eigvals <= EPS*max(1., eigvals.max())]
    if null.shape[1] == 0:
        return

    Q, _ = np.linalg.qr(scale[:, None] * X)
    cosines = np.linalg.svd(Q.T @ null, compute_uv=False)
    if null.shape[1] <= Q.shape[1] and cosines.min() > 1 - np.sqrt(EPS):
        raise FitError("%s: full likelihood is unbounded as the residual variance goes to "
                       "zero; the covariance terms are singular within the fixed effects, "
                       "use reml=True"%label)

def regress(y, X, covariances, identity=True, weights=None, start=None, reml=True,
            fixed_names=None, samples=None, positions=None, n_records=None, name=None,
            tol=TOL, maxiter=MAXITER, max_time=None, label='full model'):

    """Estimate variance components of a linear mixed model

    The covariance of the response is modeled as a sum of proportional
    covariance matrices, each scaled by a non-negative variance component.

    Parameters
    ----------
    y : ndarray, shape (n, ) or (n, 1)
        Response values

    X : ndarray, shape (n, c)
        Fixed effect design matrix. Set to None for an intercept only.

    covariances : OrderedDict
        Proportional covariance matrices keyed by component name

    identity : bool, default=True
        Append a residual term named 'In'; the identity matrix, or
        diag(weights) when weights are given

    weights : ndarray, shape (n, ), default=None
        Values proportional to the residual variance of each sample

    start : dict, default=None
        Starting values of variance components, keyed by component name

    reml : bool, default=True
        Maximize the restricted likelihood instead of the full likelihood

    tol : float
        Termination criterion for scipy.optimize

    maxiter : int
        Maximum number of optimizer iterations

    max_time : float, default=None
        Maximum number of seconds spent in the optimizer

    label : str
        Description of the model, used in error messages
    """

    y = np.asarray(y, dtype='float').reshape(-1, 1)
    N = y.shape[0]
    if not np.all(np.isfinite(y)):
        raise FitError("%s: response has non-finite values"%label)
    if X is None:
        X = np.ones((N, 1))
    X = np.asarray(X, dtype='float')
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.shape[0] != N:
        raise FitError("%s: fixed effect design has %d rows, expected %d"%(label, X.shape[0], N))
    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise FitError("%s: fixed effect design is rank deficient"%label)

    covariances = OrderedDict((term, _check_covariance(term, kinship, N, label))
                              for term, kinship in OrderedDict(covariances).items())
    if identity:
        if RESIDUAL in covariances:
            raise FitError("%s: residual term '%s' given with identity=True"%(label, RESIDUAL))
        if weights is None:
            covariances[RESIDUAL] = np.eye(N)
        else:
            weights = np.asarray(weights, dtype='float').ravel()
            if weights.size != N or np.any(~np.isfinite(weights)) or np.any(weights <= 0):
                raise FitError("%s: weights must be %d positive values"%(label, N))
            covariances[RESIDUAL] = np.diag(weights)
    if len(covariances) == 0:
        raise FitError("%s: no covariance terms"%label)
    terms = list(covariances.keys())
    if not reml and RESIDUAL in covariances:
        _check_full_likelihood(X, covariances, label)

    model = Model(y, X, covariances, fixed_names=fixed_names, samples=samples,
                  positions=positions, n_records=n_records, name=name, reml=reml)

    # optimize on the scale of a unit variance response
    scale = np.var(y)
    if scale <= 0:
        raise FitError("%s: response has zero variance"%label)
    Y = y / np.sqrt(scale)
    kinships = list(covariances.values())
    core = Core(X, kinships, reml=reml)

    bounds = [(EPS, np.inf) if term == RESIDUAL else (0, np.inf) for term in terms]
    xo = np.ones(len(terms)) / len(terms)
    if start is not None:
        unknown = [term for term in start if term not in covariances]
        if unknown:
            raise ValueError("starting values given for unknown terms %s"%unknown)
        for k, term in enumerate(terms):
            if term in start:
                xo[k] = start[term] / scale
    xo = np.array([max(x_, lo) for x_, (lo, _) in zip(xo, bounds)])

    started = time.time()
    def callback(xk):
        if max_time is not None and time.time()-started > max_time:
            raise FitError("%s: exceeded time limit of %s seconds"%(label, max_time))

    try:
        result = opt.minimize(core.function, xo, jac=core.gradient, tol=tol,
                              args=(Y,), method='L-BFGS-B', bounds=bounds,
                              callback=callback, options={'maxiter': maxiter})
    except np.linalg.LinAlgError as err:
        raise FitError("%s: %s"%(label, err)) from err

    if not result['success']:
        raise FitError("%s: failed to find optimal variance components (%s)"
                       %(label, result['message']))

    # parameters should be strictly non-negative
    optimal_param = result['x'].copy()
    optimal_param[optimal_param < 0] = 0
    sigma = OrderedDict(zip(terms, optimal_param*scale))

    # likelihood of the response on its original scale
    dof = core.N - core.C if reml else core.N
    log_likelihood = -result['fun'] - 0.5*dof*np.log(scale)

    final = Core(X, kinships, reml=reml)
    try:
        final._set_state(optimal_param*scale)
    except np.linalg.LinAlgError as err:
        raise FitError("%s: %s"%(label, err)) from err

    return FittedModel(model, sigma, log_likelihood, final, iterations=result['nit'])

def refit(model, start=None, label='reduced model', **fitter_options):

    """Fit a model whose design context (including the residual term) is given

    Parameters
    ----------
    model : Model
        Design context to fit

    start : dict, default=None
        Starting values of variance components
    """

    return regress(model.y, model.X, model.covariances, identity=False,
                   start=start, reml=model.reml, fixed_names=model.fixed_names,
                   samples=model.samples, positions=model.positions,
                   n_records=model.n_records, name=model.name, label=label, **fitter_options)
