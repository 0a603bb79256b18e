import sys
import time

import numpy as np
import statsmodels.api as sm
from scipy.stats import ncx2

from bartree import BartOptions, LeafParameters, Leaf, Tree
from bartmoves import update_tree

class Data:
    """ Parent class for DataTrain and DataTest. """
    def __init__(self, X):
        self.X = np.asarray(X, dtype=float)
        assert self.X.ndim == 2, 'X must be a matrix!'
        self.N, self.J = self.X.shape

class DataTrain(Data):
    """ Holds the training data.

    Attributes:
        y_raw (array): Dependent variables on original scale
        y (array): Dependent variables scaled to [-0.5, 0.5] to be used for
        model training.
        y_min: Minimum of y_raw
        y_max: Maximum of y_raw
        y_raw_mid: Midpoint of y_raw (needed for unscaling)
        y_raw_ran: Range of y_raw (needed for unscaling)

    """

    def __init__(self, y_raw, X):
        super().__init__(X)
        self.y_raw = np.asarray(y_raw, dtype=float)
        assert self.y_raw.shape == (self.N,), \
            'y and X must have the same number of rows!'

        self.y_min = np.amin(self.y_raw)
        self.y_max = np.amax(self.y_raw)
        assert self.y_max > self.y_min, 'y must not be constant!'
        self.y_raw_mid = (self.y_min + self.y_max) / 2
        self.y_raw_ran = self.y_max - self.y_min

        self.y = self.scale(self.y_raw)

    def scale(self, y_raw):
        """ Transforms dependent data to the model scale. """
        return (y_raw - self.y_min) / self.y_raw_ran - 0.5

    def unscale(self, y):
        """ Transforms dependent data to original scale. """
        return y * self.y_raw_ran + self.y_raw_mid

class DataTest(Data):
    """ Holds the test data. The responses are optional. """
    def __init__(self, X, y=None):
        super().__init__(X)
        self.y = y

class Forest:
    """ Represents the ensemble state: trees and shared leaf parameters.

    Trees are updated one after the other; each update reads the running
    fits that already include the trees updated before it in the same
    iteration. sigma is updated once per iteration after all trees.

    Attributes:
        options: BART options
        leaf_parameters: Shared parameters of the leaves (incl. sigma)
        trees: List of trees.
        rng: Random generator driving all draws.
        y_hat (array): Current fit on the training data (model scale)
        X_test (array): Test design matrix
        y_pred (array): Current prediction on the test data (model scale)

    """

    @staticmethod
    def _set_leaf_parameters(data, options):
        """ Derives the prior hyperparameters from the training data.

        Arguments:
            data: Training data object.
            options: BART options.

        Returns:
            params: LeafParameters with sigma set to the empirical estimate.

        """

        #Estimate empirical standard deviation
        if data.J < data.N:
            lm = sm.OLS(data.y, data.X).fit()
            sigma_emp = np.std(lm.resid, ddof=1)
        else:
            sigma_emp = np.std(data.y)

        sigma_prior = 0.5 / (options.k * np.sqrt(options.num_trees))

        #Set lambda
        qchi = ncx2.ppf(options.q, options.nu, 1.0)
        lam = sigma_emp**2 * qchi / options.nu

        if options.verbose:
            print('Sigma hat: ' + str(sigma_emp) +
                  '; std y: ' + str(np.sqrt(np.mean(data.y**2))) +
                  '; sigma mu: ' + str(sigma_prior))
            sys.stdout.flush()
        return LeafParameters(sigma_emp, sigma_prior, options.nu, lam)

    def __init__(self, options, data, X_test, rng):
        self.options = options
        self.rng = rng
        self.leaf_parameters = self._set_leaf_parameters(data, options)
        self.N = data.N

        self.trees = []
        for i in np.arange(options.num_trees):
            tree = Tree(Leaf(data.y, np.arange(data.N)))
            tree.update_leaf_values(self.leaf_parameters, rng)
            self.trees.append(tree)

        self.y_hat = self._sum_trees(lambda t: t.fit(self.N))
        self.X_test = np.asarray(X_test, dtype=float)
        self.y_pred = self._sum_trees(lambda t: t.predict(self.X_test))

    def _sum_trees(self, f):
        return np.sum([f(t) for t in self.trees], axis=0)

    def _update_sigma(self, y):
        """ Draws posterior sample of the scale of the error term. """
        params = self.leaf_parameters
        ssr = np.sum((y - self.y_hat)**2)
        df = params.nu + self.N
        scale_df = params.nu * params.lam + ssr
        params.sigma = np.sqrt(scale_df / self.rng.chisquare(df))

    def update(self, data):
        """ Updates the forest by updating all trees and the scale.

        Returns:
            updates (int): Number of accepted tree proposals.
            num_leaves (list): Number of leaves of each tree.

        """
        updates = 0
        for tree in self.trees:
            y_hat_tree = tree.fit(self.N)
            y_pred_tree = tree.predict(self.X_test)
            r = data.y - self.y_hat + y_hat_tree

            tree.update_statistics(r)
            _, updated = update_tree(self, tree, data.X, r)
            updates += updated
            tree.update_leaf_values(self.leaf_parameters, self.rng)

            self.y_hat += tree.fit(self.N) - y_hat_tree
            self.y_pred += tree.predict(self.X_test) - y_pred_tree

        self._update_sigma(data.y)
        return updates, [t.num_leaves() for t in self.trees]

    def predict(self, data, X):
        """ Performs out-sample prediction as sum of all trees on the original
        scale. """
        return data.unscale(self._sum_trees(lambda t: t.predict(X)))

    def variable_inclusion(self, J):
        """ Extracts variable inclusion proportions for forest. """
        variable_inclusion_props = np.zeros((J,))
        for t in self.trees:
            for j in t.variables():
                variable_inclusion_props[j] += 1
        total = variable_inclusion_props.sum()
        if total > 0:
            variable_inclusion_props /= total
        return variable_inclusion_props

class McmcResults:
    """ Holds the results of a MCMC simulation.

    Attributes:
        time: estimation time.

        y_hat_draws: Draws of fitted values.
        sigma_draws: Draws of error scale.
        y_pred_draws: Draws of out-of-sample predictions.
        tree_acceptance: Proportion of accepted tree proposals per iteration.
        mean_leaf_nodes: Mean number of leaves per iteration.
        variable_inclusion_props_draws: Draws of variable inclusion
        proportions.

        y_hat_mean: Posterior means of fitted values.
        sigma_mean: Posterior mean of error scale.
        y_pred_mean: Posterior mean of out-of-sample predictions.
        variable_inclusion_props_mean: Posterior mean of variable inclusion
        proportions.

    """

    def __init__(self, toc, data,
                 y_hat_draws, sigma_draws, y_pred_draws,
                 tree_acceptance, mean_leaf_nodes,
                 variable_inclusion_props_draws):
        self.time = toc

        self.y_hat_draws = data.unscale(y_hat_draws)
        self.sigma_draws = sigma_draws
        self.y_pred_draws = data.unscale(y_pred_draws)
        self.tree_acceptance = tree_acceptance
        self.mean_leaf_nodes = mean_leaf_nodes
        self.variable_inclusion_props_draws = variable_inclusion_props_draws

        nKeep = y_pred_draws.shape[0]
        self.y_hat_mean = data.unscale(y_hat_draws.sum(axis=0) / nKeep)
        self.sigma_mean = sigma_draws.mean()
        self.y_pred_mean = data.unscale(y_pred_draws.sum(axis=0) / nKeep)
        self.variable_inclusion_props_mean \
            = variable_inclusion_props_draws.mean(axis=0)

class BartMcmc:
    """ Performs MCMC simulation of BART.

    Attributes:
        bart_options: BART options
        data: Training data object
        data_test: Test data object
        seed: Seed of the random generator

    """

    def __init__(self, bart_options, data, data_test, seed=None):
        self.bart_options = bart_options
        self.data = data
        self.data_test = data_test
        self.seed = seed
        assert data_test.J == data.J, \
            'Test data must have the same number of predictors!'

    @staticmethod
    def _display(i, sample_state, sigma, updates, num_leaves):
        print('Iteration: ' + str(i) + ' (' + sample_state + ')' +
              '; sigma: ' + str(sigma) +
              '; updates: ' + str(updates) +
              '; max leaf nodes: ' + str(np.max(num_leaves)) +
              '; mean leaf nodes: ' + str(np.mean(num_leaves)) + ';')
        sys.stdout.flush()

    def _mcmc_chain(self, data, data_test):
        """ One MCMC chain.

        Returns:
            results: An instance of McmcResults containing the posterior
            samples.

        """
        opts = self.bart_options
        rng = np.random.default_rng(self.seed)
        nKeep = opts.num_draws - opts.burn_in

        ###
        #Storage
        ###

        y_hat_draws = np.zeros((nKeep, data.N))
        sigma_draws = np.zeros((nKeep,))
        y_pred_draws = np.zeros((nKeep, data_test.N))
        tree_acceptance = np.zeros((opts.num_draws,))
        mean_leaf_nodes = np.zeros((opts.num_draws,))
        variable_inclusion_props_draws = np.zeros((nKeep, data.J))

        ###
        #Initialise
        ###

        tic = time.time()
        forest = Forest(opts, data, data_test.X, rng)

        ###
        #Sampling
        ###

        j = -1
        sample_state = 'burn in'

        for i in np.arange(opts.num_draws):
            updates, num_leaves = forest.update(data)
            tree_acceptance[i] = updates / opts.num_trees
            mean_leaf_nodes[i] = np.mean(num_leaves)

            if (i+1) > opts.burn_in:
                sample_state = 'sampling'
                j += 1
                y_hat_draws[j,:] = forest.y_hat
                sigma_draws[j] = forest.leaf_parameters.sigma \
                    * data.y_raw_ran
                y_pred_draws[j,:] = forest.y_pred
                variable_inclusion_props_draws[j,:] \
                    = forest.variable_inclusion(data.J)

            #Display progress at powers of two and at the end
            if opts.verbose and \
                    (((i+1) & i) == 0 or (i+1) == opts.num_draws):
                self._display(i+1, sample_state,
                              forest.leaf_parameters.sigma, updates,
                              num_leaves)

        toc = time.time() - tic
        return McmcResults(toc, data,
                           y_hat_draws, sigma_draws, y_pred_draws,
                           tree_acceptance, mean_leaf_nodes,
                           variable_inclusion_props_draws)

    def estimate(self):
        """ Estimates BART via MCMC. """
        results = self._mcmc_chain(self.data, self.data_test)
        if self.bart_options.verbose:
            print('Estimation time [s]:' + str(results.time))
            sys.stdout.flush()
        return results

def fit_predict(x_train, y_train, options, x_test, seed=None):
    """ Fits BART and returns the posterior mean prediction.

    Arguments:
        x_train (array): Training design matrix of dimension N x J.
        y_train (array): Training responses.
        options (BartOptions): BART options; defaults if None.
        x_test (array): Test design matrix.
        seed: Seed of the random generator.

    Returns:
        y_pred (array): Posterior mean of the test responses on the original
        scale.

    """
    if options is None:
        options = BartOptions()
    data = DataTrain(y_train, x_train)
    data_test = DataTest(x_test)
    results = BartMcmc(options, data, data_test, seed).estimate()
    return results.y_pred_mean

class SyntheticData:
    """ Generates synthetic data.

    Attributes:
        N_train (int): Number of training samples.
        N_test (int): Number of test samples.
        rng: Random generator.

    """

    def __init__(self, N_train=100, N_test=10, seed=None):
        self.N_train = N_train
        self.N_test = N_test
        self.N = N_train + N_test
        self.rng = np.random.default_rng(seed)

    @staticmethod
    def _friedman_f(x):
        """ Friedman's 5-dimensional test function. """
        f = 10 * np.sin(np.pi * x[:,0] * x[:,1]) + 20 * (x[:,2] - 0.5)**2 \
        + 10 * x[:,3] + 5 * x[:,4]
        return f

    def _split(self, y, x):
        """ Splits data in training and test data. """
        y_train = np.array(y[:self.N_train])
        x_train = np.array(x[:self.N_train,:])
        y_test = np.array(y[self.N_train:])
        x_test = np.array(x[self.N_train:,:])
        return (y_train, x_train), (y_test, x_test)

    def linear(self, p=2, noise=0.1):
        """ Generates responses that are linear in the predictors.

        Arguments:
            p (int): Number of predictors.
            noise (float): Standard deviation of the error term.

        Returns:
            synth: Tuple of training and test data.
        """
        x = self.rng.random((self.N, p))
        y = x @ np.arange(1, p + 1) + noise * self.rng.standard_normal(self.N)
        return self._split(y, x)

    def friedman(self, p=10):
        """ Generates continuous responses based on Friedman's test function.

        Arguments:
            p (int): Number of predictors (must be at least five).

        Returns:
            synth: Tuple of training and test data.
        """
        assert p >= 5, 'p must be at least 5.'
        x = self.rng.random((self.N, p))
        f_x = self._friedman_f(x)
        eps = self.rng.standard_normal(self.N)
        y = f_x + eps
        return self._split(y, x)


if __name__ == "__main__":

    synth = SyntheticData(N_train=500, N_test=50, seed=4711).friedman(10)
    data = DataTrain(*synth[0])
    data_test = DataTest(synth[1][1], synth[1][0])

    bart_options = BartOptions(num_trees=50)
    results = BartMcmc(bart_options, data, data_test, seed=4711).estimate()

    rmse = np.sqrt(np.mean((data.y_raw - results.y_hat_mean)**2))
    rmse_test = np.sqrt(np.mean((data_test.y - results.y_pred_mean)**2))
    print(rmse)
    print(rmse_test)
    print(np.round(results.variable_inclusion_props_mean, 3))
