import os
import pickle
import pysam

import numpy as np
import pandas as pd

class Genotype:

    """
    Loads, processes and returns the genomic relationship matrix
    and standardized genotypes of all markers.

    Attributes
    ----------

    N_samples : int
                Number of samples used for GBLUP and association analyses.

    N_all_samples : int
                    Total number of samples

    _kinship : DataFrame; shape (N_all_samples, N_all_samples)
               Relationship matrix among all samples

    kinship : DataFrame; shape (N_samples, N_samples)
              Relationship matrix among subset of samples used for GBLUP
              and association analyses

    all_samples : list
                  All samples in the dataset

    samples : list
              Samples used for GBLUP and association analyses

    sample_indices : list
                     Indices of samples in `all_samples` used for GBLUP
                     and association analyses

    """

    def __init__(self):

        self.all_samples = None
        self.N_all_samples = None

        self.samples = None
        self.N_samples = None
        self.sample_indices = None

        self._kinship = None
        self.kinship = None

    def load_genotypes(self, genotype_file):

        """Loads and returns standardized genotypes of all markers, as a
        DataFrame with markers in rows and samples in columns.

        Parameters
        ----------

        genotype_file : str
                        Name of csv file with marker ids in the first column
                        and one column per sample.
        """

        genotypes = pd.read_csv(genotype_file, index_col=0)
        genotypes.columns = genotypes.columns.astype(str)
        if self.all_samples is None:
            self.all_samples = list(genotypes.columns)
            self.N_all_samples = len(self.all_samples)
        # restrict to subset of samples
        if self.samples is not None:
            genotypes = genotypes.loc[:, self.samples]
        return genotypes.astype('float')

    def load_genotypes_tabix(self, genotype_file, chromosome=None, start=None, end=None):

        """Loads and returns the standardized genotypes of all markers
        within a specific locus, from a bgzipped and tabix indexed file.
        The genotype at each marker is an ndarray of shape (1, `.all_samples`).

        Parameters
        ----------

        genotype_file : str
                        Name of file with chromosome, position and marker id
                        followed by one column per sample in `all_samples`
        """

        handle = pysam.TabixFile(genotype_file)
        try:
            rows = handle.fetch(chromosome, start, end, parser=pysam.asTuple())
            for row in rows:
                variant = ':'.join(row[:2])
                genotypes = np.array(row[3:3+self.N_all_samples]).astype('float')
                # restrict to subset of samples
                if self.sample_indices is not None:
                    genotypes = genotypes[self.sample_indices]
                yield variant, np.expand_dims(genotypes, axis=0)
        finally:
            handle.close()

    def load_kinship(self, kinship_file):

        """Loads the genomic relationship matrix.

        Parameters
        ----------

        kinship_file : str
                       Name of csv file containing relationships between all
                       samples, with sample ids in the header and first column.
        """

        kinship = pd.read_csv(kinship_file, index_col=0)
        kinship.index = kinship.index.astype(str)
        kinship.columns = kinship.columns.astype(str)
        if not kinship.index.equals(kinship.columns):
            raise ValueError("rows and columns of %s are not the same samples"%kinship_file)
        self.all_samples = list(kinship.index)
        self.N_all_samples = len(self.all_samples)
        self._kinship = kinship.astype('float')

        self.reduce_to(self.all_samples)

    def reduce_to(self, samples):

        """Reduces the set of samples to be analyzed to a specified subset.

        Parameters
        ----------

        samples : list
                  List of samples to retain in the subset.
        """

        self.sample_indices = [self.all_samples.index(sample) for sample in samples]
        self.samples = list(samples)
        self.N_samples = len(samples)
        if self._kinship is not None:
            self.kinship = self._kinship.loc[self.samples, self.samples]

class Phenotype:

    """
    Loads, processes and returns the records of a response variable.

    Attributes
    ----------

    N_all_samples : int
                    Total number of samples with a finite response

    all_data : DataFrame; shape (N_all_samples, 1)
               Response values among all samples

    data : DataFrame; shape (N_samples, 1)
           Response values among subset of samples used for GBLUP
           and association analyses

    all_samples : list
                  All samples in the dataset

    samples : list
              Samples used for GBLUP and association analyses

    """

    def __init__(self):

        self.name = None
        self.all_samples = []
        self.all_data = None
        self.samples = None
        self.data = None

        self.N_all_samples = None
        self.N_samples = None

    def load(self, filename, phenotype_name):

        """Loads the records of one response variable.

        Parameters
        ----------

        filename : str
                   Name of csv file with sample ids in the first column and
                   one column per response variable

        phenotype_name : str
                         Name of the response column

        """

        table = pd.read_csv(filename, index_col=0)
        table.index = table.index.astype(str)
        values = pd.to_numeric(table[phenotype_name], errors='coerce')

        # remove nans and infs
        values = values[np.isfinite(values.values)]
        self.name = phenotype_name
        self.all_data = values.to_frame(phenotype_name)
        self.all_samples = list(self.all_data.index)
        self.N_all_samples = len(self.all_samples)

    def reduce_to(self, samples):

        """Reduces the set of samples to be analyzed to a specified subset.

        Parameters
        ----------

        samples : list
                  List of samples to retain in the subset.
        """

        self.samples = list(samples)
        self.data = self.all_data.loc[self.samples]
        self.N_samples = len(self.samples)

class Covariate:

    """
    Loads, processes and returns a table of classification factors
    and covariates.

    Parameters
    ----------

    effect : str ('fixed' / 'random', default 'fixed')

    Attributes
    ----------

    N_all_samples : int
                    Total number of samples

    all_data : DataFrame; shape (N_all_samples, N_covars)
               Covariate values among all samples

    data : DataFrame; shape (N_samples, N_covars)
           Covariate values among subset of samples used for GBLUP
           and association analyses

    all_samples : list
                  All samples in the dataset

    samples : list
              Samples used for GBLUP and association analyses

    names : list
            List of names of all covariates.

    N_covars : int
               Number of covariates

    """

    def __init__(self, effect='fixed'):

        self.all_samples = []
        self.all_data = None
        self.names = []

        self.samples = None
        self.data = None
        self.N_all_samples = None
        self.N_samples = None
        self.N_covars = None

        self.effect = effect

    def load(self, filename):

        """Loads the table of covariates.

        Parameters
        ----------

        filename : str
                   Name of csv file with sample ids in the first column.

        """

        self.all_data = pd.read_csv(filename, index_col=0)
        self.all_data.index = self.all_data.index.astype(str)
        self.all_samples = list(self.all_data.index)
        self.N_all_samples = len(self.all_samples)
        self.names = list(self.all_data.columns)
        self.N_covars = len(self.names)

        self.reduce_to(self.all_samples)

    def reduce_to(self, samples):

        """Reduces the set of samples to be analyzed to a specified subset.

        Parameters
        ----------

        samples : list
                  List of samples to retain in the subset.
        """

        self.samples = list(samples)
        self.N_samples = len(self.samples)
        self.data = self.all_data.loc[self.samples]

def intersect_datasets(genotype, phenotype, covariates, at_samples=None):

    """Find intersection of samples in the genotype, phenotype, and covariate
    datasets, subset each to the intersection, and return the records of
    the response joined with the covariates.

    Parameters
    ----------

    genotype : object of Genotype

    phenotype : object of Phenotype

    covariates : list of objects of Covariate

    at_samples : list (default None)
                 List of samples to subset the intersection to

    Returns
    -------

    design : dict
             Names of covariates entering as 'fixed' and 'random' effects
    """

    common_samples = set(genotype.all_samples).intersection(phenotype.all_samples)
    for covariate in covariates:
        common_samples = common_samples.intersection(covariate.all_samples)
    if at_samples is not None:
        common_samples = common_samples.intersection(at_samples)
    common_samples = sorted(common_samples)

    genotype.reduce_to(common_samples)
    phenotype.reduce_to(common_samples)
    _ = [covariate.reduce_to(common_samples) for covariate in covariates]

    data = phenotype.data.join([covariate.data for covariate in covariates]) \
        if covariates else phenotype.data.copy()
    design = {'fixed': [name for covariate in covariates if covariate.effect == 'fixed'
                        for name in covariate.names],
              'random': [name for covariate in covariates if covariate.effect == 'random'
                         for name in covariate.names]}
    return data, design

def save_model(gb, basename, path='.'):

    """Saves fixed effect estimates and variance components of a fitted model.

    Parameters
    ----------

    gb : FittedModel

    basename : str
               Prefix of the file name; the model name is appended

    path : str
           Directory to write to

    Returns
    -------

    fname : str
            Name of the written file
    """

    tosave = gb.summary()
    fname = os.path.join(path, "%s_%s.pkl"%(basename, tosave['name']))
    with open(fname, 'wb') as handle:
        pickle.dump(tosave, handle)
    return fname

def load_model(fname):

    """Loads a model summary written by :func:`save_model`"""

    with open(fname, 'rb') as handle:
        return pickle.load(handle)
