class GblupError(Exception):

    """Base class for errors raised while fitting or testing a model"""


class FitError(GblupError, ValueError):

    """The variance component fit did not converge, or its inputs
    (covariance matrices, fixed effect design) are invalid.
    """


class DegenerateMatrixError(GblupError, ValueError):

    """A relationship matrix has a zero or undefined mean diagonal"""


class RefitInstabilityError(GblupError, ArithmeticError):

    """The reduced model has a larger log likelihood than the full model

    Parameters
    ----------
    full : float
        Log likelihood of the full model

    reduced : float
        Log likelihood of the reduced model
    """

    def __init__(self, full, reduced):

        self.full = full
        self.reduced = reduced
        self.tst = full - reduced
        super().__init__("log likelihood of reduced model (%.6f) exceeds "
                         "that of full model (%.6f)"%(reduced, full))
