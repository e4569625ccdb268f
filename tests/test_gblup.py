import os
import shutil
import tempfile
import types
import unittest
from collections import OrderedDict
from unittest import mock

import numpy as np
import pandas as pd

from gblup_gwa import data_io
from gblup_gwa.models import gblup
from gblup_gwa.models import regress
from gblup_gwa.models import utils
from gblup_gwa.models.errors import DegenerateMatrixError, FitError, RefitInstabilityError


def standardize(genotypes):
    mean = genotypes.mean(1, keepdims=True)
    sd = genotypes.std(1, keepdims=True)
    sd[sd == 0] = 1
    return (genotypes - mean) / sd


def generate_data(n_samples=60,
                  n_markers=200,
                  sigma_g=2.0,
                  sigma_e=1.0,
                  n_qtl=3,
                  seed=1):
    np.random.seed(seed)
    samples = ['S%03d'%i for i in range(n_samples)]
    markers = ['M%04d'%i for i in range(n_markers)]
    freqs = np.random.uniform(0.2, 0.8, size=(n_markers, 1))
    Z = standardize(np.random.binomial(2, freqs, size=(n_markers, n_samples)).astype('float'))
    K = Z.T @ Z / n_markers

    a = np.random.normal(scale=np.sqrt(sigma_g/n_markers), size=n_markers)
    a[:n_qtl] += np.sqrt(sigma_g/n_qtl)
    sex = np.random.choice(['F', 'M'], size=n_samples)
    age = np.random.normal(size=n_samples)
    y = 1 + (sex == 'M')*0.5 + 0.3*age + Z.T @ a + \
        np.random.normal(scale=np.sqrt(sigma_e), size=n_samples)

    data = pd.DataFrame({'y': y, 'sex': sex, 'age': age}, index=samples)
    genotypes = pd.DataFrame(Z, index=markers, columns=samples)
    kinship = pd.DataFrame(K, index=samples, columns=samples)
    return data, genotypes, kinship


def fake_fit(llik, sigma=None):
    sigma = sigma if sigma is not None else OrderedDict([('G', 1.), ('In', 1.)])
    model = mock.Mock()
    model.drop.return_value = model
    return types.SimpleNamespace(sigma=OrderedDict(sigma), llik=llik, model=model)


class TestRelationshipMatrix(unittest.TestCase):

    def test_properties(self):
        _, genotypes, _ = generate_data()
        M = utils.relationship_matrix(genotypes.values[:20], 3.0)
        np.testing.assert_array_equal(M, M.T)
        self.assertGreater(np.linalg.eigvalsh(M)[0], -1e-8)
        self.assertAlmostEqual(np.mean(np.diag(M)), 3.0)

    def test_rescale_halves_diagonal(self):
        z = 2*np.eye(3)
        M = utils.relationship_matrix(z)
        self.assertAlmostEqual(np.mean(np.diag(M)), 4.0)
        scaled = utils.relationship_matrix(z, 2.0)
        np.testing.assert_almost_equal(np.diag(scaled), np.diag(M)/2)
        self.assertAlmostEqual(np.mean(np.diag(scaled)), 2.0)

    def test_no_markers(self):
        with self.assertRaises(DegenerateMatrixError):
            utils.relationship_matrix(np.zeros((0, 5)), 1.0)

    def test_zero_diagonal(self):
        with self.assertRaises(DegenerateMatrixError):
            utils.relationship_matrix(np.zeros((4, 5)), 1.0)


class TestBoundaryPvalue(unittest.TestCase):

    def test_example(self):
        self.assertAlmostEqual(utils.boundary_pvalue(-100.0 - -102.0), 0.02275, places=5)

    def test_range_and_monotonicity(self):
        pvalues = [utils.boundary_pvalue(tst) for tst in np.linspace(0, 10, 50)]
        self.assertAlmostEqual(pvalues[0], 0.5)
        self.assertTrue(np.all(np.diff(pvalues) <= 0))
        self.assertTrue(all(0 <= p <= 0.5 for p in pvalues))


class TestLRT(unittest.TestCase):

    def test_example(self):
        reduced = fake_fit(-102.0, OrderedDict([('In', 2.)]))
        with mock.patch.object(gblup, 'refit', return_value=reduced) as refit:
            result = gblup.lrt(fake_fit(-100.0))
        self.assertEqual(refit.call_args[1]['start'], OrderedDict([('In', 1.)]))
        self.assertAlmostEqual(result.pvalue, 0.02275, places=5)
        self.assertEqual(result.llik['dif'][0], 2.0)
        self.assertTrue(np.isnan(result.vars.loc['G', 'reduced']))
        self.assertEqual(result.vars.loc['In', 'reduced'], 2.)
        np.testing.assert_almost_equal(result.vars['perc_full'].values, [50., 50.])

    def test_monotonicity(self):
        reduced = fake_fit(-102.0, OrderedDict([('In', 2.)]))
        pvalues = []
        with mock.patch.object(gblup, 'refit', return_value=reduced):
            for llik in [-101.5, -101.0, -100.0, -98.0]:
                pvalues.append(gblup.lrt(fake_fit(llik)).pvalue)
        self.assertTrue(np.all(np.diff(pvalues) <= 0))

    def test_refit_instability(self):
        reduced = fake_fit(-99.0, OrderedDict([('In', 2.)]))
        with mock.patch.object(gblup, 'refit', return_value=reduced):
            with self.assertRaises(RefitInstabilityError) as context:
                gblup.lrt(fake_fit(-100.0))
        self.assertEqual(context.exception.tst, -1.0)

    def test_refit_failure_propagates(self):
        with mock.patch.object(gblup, 'refit', side_effect=FitError("reduced model")):
            with self.assertRaises(FitError):
                gblup.lrt(fake_fit(-100.0))

    def test_unknown_component(self):
        with self.assertRaises(ValueError):
            gblup.lrt(fake_fit(-100.0), component='H')

    def test_fitted_model(self):
        data, _, kinship = generate_data()
        gb = gblup.gblup('y', data, {'fixed': ['sex', 'age']}, kinship)
        result = gblup.lrt(gb)
        result_ = gblup.lrt(gb)
        self.assertAlmostEqual(result.pvalue, result_.pvalue)
        self.assertTrue(0 <= result.pvalue <= 0.5)
        self.assertGreaterEqual(result.llik['dif'][0], -gblup.LLIK_TOL)
        self.assertEqual(list(result.vars.index), ['G', 'In'])
        self.assertAlmostEqual(result.vars['perc_full'].sum(), 100.)


class TestGblup(unittest.TestCase):

    def setUp(self):
        self.data, self.genotypes, self.kinship = generate_data()

    def test_design(self):
        gb = gblup.gblup('y', self.data, {'fixed': ['sex', 'age']}, self.kinship)
        self.assertEqual(list(gb.beta.index), ['(Intercept)', 'sex_M', 'age'])
        self.assertEqual(gb.model.name, 'y')
        self.assertEqual(gb.model.samples, list(self.data.index))

    def test_response_list(self):
        gb = gblup.gblup(['y', 'age'], self.data, {}, self.kinship)
        self.assertEqual(gb.model.name, 'y')

    def test_random_and_extra_covariances(self):
        data = self.data.copy()
        data['pen'] = np.repeat(['p%d'%i for i in range(6)], 10)
        extra = {'E': utils.incidence_covariance(np.tile(np.arange(5), 12))}
        gb = gblup.gblup('y', data, {'fixed': ['sex'], 'random': ['pen']}, self.kinship,
                         extra_covariances=extra)
        self.assertEqual(list(gb.sigma.keys()), ['G', 'pen', 'E', 'In'])
        self.assertEqual(gb.model.covariances['pen'][0, 9], 1.)
        self.assertEqual(gb.model.covariances['pen'][0, 10], 0.)

    def test_missing_response(self):
        data = self.data.copy()
        data.iloc[[3, 7], 0] = np.nan
        gb = gblup.gblup('y', data, {}, self.kinship.values)
        self.assertEqual(gb.model.N, data.shape[0]-2)
        np.testing.assert_almost_equal(gb.model.covariances['G'],
                                       self.kinship.drop(index=['S003', 'S007'],
                                                         columns=['S003', 'S007']).values)
        gw = gblup.gwas(gb, self.genotypes.values)
        self.assertEqual(gw.shape, (self.genotypes.shape[0], 2))

    def test_weights_by_response(self):
        weights = pd.DataFrame({'y': np.linspace(1, 2, self.data.shape[0])},
                               index=self.data.index)
        gb = gblup.gblup('y', self.data, {}, self.kinship, weights=weights)
        np.testing.assert_almost_equal(np.diag(gb.model.covariances['In']), weights['y'].values)

    def test_misaligned_kinship(self):
        with self.assertRaises(FitError):
            gblup.gblup('y', self.data, {}, self.kinship.iloc[1:, 1:])

    def test_full_likelihood_with_centred_kinship(self):
        with self.assertRaisesRegex(FitError, "full likelihood is unbounded"):
            gblup.gblup('y', self.data, {'fixed': ['sex', 'age']}, self.kinship, reml=False)


class TestGwas(unittest.TestCase):

    def setUp(self):
        self.data, self.genotypes, self.kinship = generate_data()
        self.gb = gblup.gblup('y', self.data, {'fixed': ['sex', 'age']}, self.kinship)

    def test_transformation_of_predictions(self):
        gw = gblup.gwas(self.gb, self.genotypes)
        x = self.genotypes.values
        K = self.kinship.values
        k = np.mean(np.diag(x.T @ x)) / np.mean(np.diag(K))
        ghat = x @ np.linalg.pinv(K, rcond=1e-10, hermitian=True) @ self.gb.blup('G').values / k
        np.testing.assert_almost_equal(gw['ghat'].values, ghat)
        self.assertTrue(np.all(gw['varg'] >= 0))

    def test_zscores(self):
        gw = gblup.gwas(self.gb, self.genotypes)
        z = gblup.zscores(gw)
        self.assertEqual(list(z.index), list(self.genotypes.index))
        np.testing.assert_almost_equal(z.values, gw['ghat'].values/np.sqrt(gw['varg'].values))

    def test_sample_order(self):
        shuffled = self.genotypes[self.genotypes.columns[::-1]]
        pd.testing.assert_frame_equal(gblup.gwas(self.gb, shuffled),
                                      gblup.gwas(self.gb, self.genotypes))

    def test_misaligned_samples(self):
        x = self.genotypes.values
        extra = np.random.normal(size=(x.shape[0], 5))
        with self.assertRaises(ValueError):
            gblup.gwas(self.gb, np.hstack([extra, x]))
        with self.assertRaises(ValueError):
            gblup.gwas(self.gb, x[:, 1:])
        pd.testing.assert_frame_equal(gblup.gwas(self.gb, x).set_axis(self.genotypes.index),
                                      gblup.gwas(self.gb, self.genotypes))


class TestRunAssociation(unittest.TestCase):

    def setUp(self):
        self.data, self.genotypes, self.kinship = generate_data()
        self.design = {'fixed': ['sex', 'age']}

    def lrt_result(self, pvalue):
        return gblup.LRTResult(pvalue, None, None)

    def test_gated_stop(self):
        with mock.patch.object(gblup, 'lrt', return_value=self.lrt_result(0.02275)):
            result = gblup.run_association('y', self.data, self.design, self.kinship,
                                           genotypes=self.genotypes, run_lrt=True,
                                           threshold=0.01)
        self.assertIsNone(result)

    def test_significant(self):
        with mock.patch.object(gblup, 'lrt', return_value=self.lrt_result(0.02275)):
            result = gblup.run_association('y', self.data, self.design, self.kinship,
                                           genotypes=self.genotypes, run_lrt=True,
                                           threshold=0.05)
        self.assertIsInstance(result, pd.Series)
        self.assertEqual(list(result.index), list(self.genotypes.index))

    def test_gating_matches_lrt(self):
        pvalue = gblup.lrt(gblup.gblup('y', self.data, self.design, self.kinship)).pvalue
        for threshold in [pvalue/2, pvalue]:
            result = gblup.run_association('y', self.data, self.design, self.kinship,
                                           genotypes=self.genotypes, run_lrt=True,
                                           threshold=threshold)
            self.assertEqual(result is not None, pvalue <= threshold)

    def test_without_lrt(self):
        with mock.patch.object(gblup, 'lrt') as lrt:
            result = gblup.run_association('y', self.data, self.design, self.kinship,
                                           genotypes=self.genotypes, threshold=0.0,
                                           return_zscore=False)
        lrt.assert_not_called()
        self.assertEqual(list(result.columns), ['ghat', 'varg'])
        self.assertEqual(list(result.index), list(self.genotypes.index))

    def test_without_lrt_ignores_threshold(self):
        result = gblup.run_association('y', self.data, self.design, self.kinship,
                                       genotypes=self.genotypes, threshold=-1.0)
        self.assertIsInstance(result, pd.Series)

    def test_zscore_matches_effects(self):
        gw = gblup.run_association('y', self.data, self.design, self.kinship,
                                   genotypes=self.genotypes, return_zscore=False)
        z = gblup.run_association('y', self.data, self.design, self.kinship,
                                  genotypes=self.genotypes)
        self.assertEqual(list(z.index), list(gw.index))
        np.testing.assert_almost_equal(z.values, gw['ghat'].values/np.sqrt(gw['varg'].values))

    def test_persist_model(self):
        path = tempfile.mkdtemp()
        gblup.run_association('y', self.data, self.design, self.kinship,
                              genotypes=self.genotypes, persist_model=True,
                              persist_basename=os.path.join(path, 'run'))
        fname = os.path.join(path, 'run_y.pkl')
        self.assertTrue(os.path.exists(fname))
        summary = data_io.load_model(fname)
        self.assertEqual(list(summary['sigma'].index), ['G', 'In'])
        shutil.rmtree(path)

    def test_fit_failure_propagates(self):
        with self.assertRaises(FitError):
            gblup.run_association('y', self.data, self.design, self.kinship,
                                  genotypes=self.genotypes, maxiter=1)

    def test_genotypes_required(self):
        with self.assertRaises(ValueError):
            gblup.run_association('y', self.data, self.design, self.kinship)


class TestPeak(unittest.TestCase):

    def setUp(self):
        self.data, self.genotypes, self.kinship = generate_data()
        self.gb = gblup.gblup('y', self.data, {'fixed': ['sex', 'age']}, self.kinship)

    def peak_model(self, peak_pos):
        with mock.patch.object(gblup, 'refit', wraps=regress.refit) as refit:
            result = gblup.test_peak(self.gb, self.genotypes, peak_pos=peak_pos)
        model = refit.call_args_list[0][0][0]
        start = refit.call_args_list[0][1]['start']
        return result, model, start

    def test_whole_genome_peak(self):
        result, model, _ = self.peak_model(None)
        K = self.kinship.values
        expected = utils.relationship_matrix(self.genotypes.values, np.mean(np.diag(K)))
        np.testing.assert_almost_equal(model.covariances['G'], expected)
        np.testing.assert_almost_equal(model.covariances['G_bkg'], K)
        self.assertTrue(0 <= result.pvalue <= 0.5)

    def test_peak_subset(self):
        result, model, start = self.peak_model(np.arange(3))
        self.assertEqual(list(model.covariances.keys()), ['G_bkg', 'G', 'In'])
        self.assertAlmostEqual(start['G_bkg'], 0.75*self.gb.sigma['G'])
        self.assertAlmostEqual(start['G'], 0.25*self.gb.sigma['G'])
        self.assertAlmostEqual(np.mean(np.diag(model.covariances['G'])),
                               np.mean(np.diag(self.kinship.values)))
        self.assertEqual(list(result.vars.index), ['G_bkg', 'G', 'In'])
        self.assertTrue(np.isnan(result.vars.loc['G', 'reduced']))
        self.assertFalse(np.isnan(result.vars.loc['G_bkg', 'reduced']))
        self.assertTrue(0 <= result.pvalue <= 0.5)

    def test_peak_by_marker_id(self):
        _, model, _ = self.peak_model(['M0000', 'M0001', 'M0002'])
        _, model_, _ = self.peak_model([0, 1, 2])
        np.testing.assert_almost_equal(model.covariances['G'], model_.covariances['G'])

    def test_empty_peak(self):
        with self.assertRaises(DegenerateMatrixError):
            gblup.test_peak(self.gb, self.genotypes, peak_pos=[])

    def test_fitter_options(self):
        with mock.patch.object(gblup, 'refit', wraps=regress.refit) as refit:
            result = gblup.test_peak(self.gb, self.genotypes, peak_pos=[0, 1, 2],
                                     reml=False, identity=True, maxiter=500)
        for call in refit.call_args_list:
            self.assertEqual(call[1]['maxiter'], 500)
            self.assertNotIn('reml', call[1])
            self.assertNotIn('identity', call[1])
        self.assertTrue(refit.call_args_list[0][0][0].reml)
        self.assertTrue(0 <= result.pvalue <= 0.5)
