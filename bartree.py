from numba import jit

import numpy as np

EMPTY_LEAF_LOG_LIKELIHOOD = -10000000.0

@jit(nopython=True)
def residual_moments(r, indices):
    """ Computes the sufficient statistics of the residuals at the given rows.

    Arguments:
        r (array): N-dimensional array of residuals.
        indices (array): Non-empty array of row indices into r.

    Returns:
        r_mean (float): Mean of the selected residuals.
        r_sigma (float): Sum of squared deviations of the selected residuals
        from their mean.

    """

    n = indices.shape[0]
    r_mean = 0.0
    for i in range(n):
        r_mean += r[indices[i]]
    r_mean /= n
    r_sigma = 0.0
    for i in range(n):
        d = r[indices[i]] - r_mean
        r_sigma += d * d
    return r_mean, r_sigma

###
#Options
###

class TransformProbabilities:
    """ Probabilities of the three tree mutation families.

    Attributes:
        node_birth_death: Probability of a birth or death proposal.
        change_decision_rule: Probability of a change proposal.
        swap_decision_rule: Probability of a swap proposal.

    """

    def __init__(
            self,
            node_birth_death=0.5,
            change_decision_rule=0.4,
            swap_decision_rule=0.1
            ):

        assert min(node_birth_death, change_decision_rule,
                   swap_decision_rule) >= 0, \
            'Transform probabilities must not be negative!'
        assert np.isclose(
            node_birth_death + change_decision_rule + swap_decision_rule, 1.0), \
            'Transform probabilities do not add up to one!'

        self.node_birth_death = node_birth_death
        self.change_decision_rule = change_decision_rule
        self.swap_decision_rule = swap_decision_rule

class BartOptions:
    """ Contains BART options.

    Attributes:
        num_trees: Number of trees.
        burn_in: Number of iterations discarded before averaging.
        num_draws: Total number of MCMC iterations (including burn in).
        alpha: Base hyperparameter of tree prior.
        beta: Power hyperparameter of tree prior.
        k: Divisor of the leaf prior scale.
        transform_probabilities: Probabilities of the tree mutations.
        nu: Degrees of freedom of Inverse-Chi^2 prior on error variance.
        q: Quantile of prior on error variance.
        verbose: Boolean indicating whether progress is printed.

    """

    def __init__(
            self,
            num_trees=10,
            burn_in=200,
            num_draws=1000,
            alpha=0.95, beta=2.0,
            k=2.0,
            transform_probabilities=None,
            nu=3.0, q=0.9,
            verbose=True
            ):

        assert num_trees > 0, 'Number of trees must be positive!'
        assert 0 <= burn_in < num_draws, \
            'Burn in must be non-negative and smaller than number of draws!'
        assert 0 < alpha < 1, 'alpha must be in (0, 1)!'
        assert beta >= 0, 'beta must be non-negative!'
        assert k > 0, 'k must be positive!'
        assert 0 < q < 1, 'q must be in (0, 1)!'

        if transform_probabilities is None:
            transform_probabilities = TransformProbabilities()

        self.num_trees = num_trees
        self.burn_in = burn_in
        self.num_draws = num_draws
        self.alpha = alpha
        self.beta = beta
        self.k = k
        self.transform_probabilities = transform_probabilities
        self.nu = nu
        self.q = q
        self.verbose = verbose

class LeafParameters:
    """ Parameters shared by the leaves of all trees.

    Attributes:
        sigma: Scale of the error term.
        sigma_prior: Prior standard deviation of the leaf values.
        nu: Degrees of freedom of the prior on sigma.
        lam: Scale of the prior on sigma.

    """

    def __init__(self, sigma, sigma_prior, nu, lam):
        self.sigma = sigma
        self.sigma_prior = sigma_prior
        self.nu = nu
        self.lam = lam

###
#Nodes
###

class Split:
    """ Represents the split at a branch.

    Arguments:
        variable (int): Index of the variable on which the split is performed.
        condition (float): Split condition. data <= condition is sent to the
        left child; data > condition is sent to the right child.

    """

    def __init__(self, variable, condition):
        self.variable = variable
        self.condition = condition

    def partition(self, X, indices):
        """ Splits row indices into the left and right sets.

        Arguments:
            X (array): Design matrix of dimension N x J.
            indices (array): Sorted row indices associated with the branch.

        Returns:
            left_indices (array): Sorted rows sent to the left child.
            right_indices (array): Sorted rows sent to the right child.

        """
        go_left = X[indices, self.variable] <= self.condition
        return indices[go_left], indices[~go_left]

    def __eq__(self, other):
        return isinstance(other, Split) \
            and self.variable == other.variable \
            and self.condition == other.condition

    def __repr__(self):
        return 'Split(' + str(self.variable) + ', ' \
            + str(self.condition) + ')'

class Leaf:
    """ Represents a terminal node.

    Attributes:
        value: Current leaf parameter.
        r_mean: Mean of the residuals routed to the leaf.
        r_sigma: Sum of squared deviations of the residuals routed to the leaf.
        train_data_indices: Sorted training row indices routed to the leaf.

    """

    def __init__(self, r, train_data_indices, value=0.0):
        self.value = value
        self.set_indices(r, train_data_indices)

    def set_indices(self, r, train_data_indices):
        """ Assigns rows to the leaf and recomputes its statistics. """
        self.train_data_indices = np.asarray(train_data_indices, dtype=np.intp)
        if self.train_data_indices.shape[0] == 0:
            self.r_mean = 0.0
            self.r_sigma = 1.0
        else:
            self.r_mean, self.r_sigma = residual_moments(
                r, self.train_data_indices)

    def n(self):
        """ Returns the number of rows routed to the leaf. """
        return self.train_data_indices.shape[0]

    def is_leaf(self):
        return True

class Branch:
    """ Represents an internal node.

    Attributes:
        split: Decision rule of the branch.
        left: Left child (Branch or Leaf).
        right: Right child (Branch or Leaf).

    """

    def __init__(self, split, left, right):
        self.split = split
        self.left = left
        self.right = right

    def is_leaf(self):
        return False

    def is_grand(self):
        """ Checks if at least one child is a branch. """
        return isinstance(self.left, Branch) or isinstance(self.right, Branch)

###
#Traversal
###

def _collect_leaves(node, leaves):
    if isinstance(node, Leaf):
        leaves.append(node)
    else:
        _collect_leaves(node.left, leaves)
        _collect_leaves(node.right, leaves)

def _collect_branches(node, branches):
    if isinstance(node, Branch):
        branches.append(node)
        _collect_branches(node.left, branches)
        _collect_branches(node.right, branches)

def _collect_grand_branches(node, branches):
    if isinstance(node, Branch) and node.is_grand():
        branches.append(node)
        _collect_grand_branches(node.left, branches)
        _collect_grand_branches(node.right, branches)

def _collect_nog_branches(node, branches):
    if isinstance(node, Branch):
        if not node.is_grand():
            branches.append(node)
        else:
            _collect_nog_branches(node.left, branches)
            _collect_nog_branches(node.right, branches)

def _depth(node, target):
    if node is target:
        return 1
    if isinstance(node, Leaf):
        return 0
    d = max(_depth(node.left, target), _depth(node.right, target))
    return d + 1 if d > 0 else 0

def _parent(node, target):
    if isinstance(node, Leaf):
        return None
    if node.left is target or node.right is target:
        return node
    parent = _parent(node.left, target)
    if parent is None:
        parent = _parent(node.right, target)
    return parent

def train_data_indices(node):
    """ Returns the sorted training rows under a node. """
    if isinstance(node, Leaf):
        return node.train_data_indices
    leaves = []
    _collect_leaves(node, leaves)
    return np.sort(np.concatenate([l.train_data_indices for l in leaves]))

def fix_data(branch, X, r, indices):
    """ Routes rows down the subtree under a branch.

    Every leaf below the branch is assigned the rows that reach it under the
    current decision rules and its statistics are recomputed. Leaves keep
    their identity and value.

    Arguments:
        branch (Branch): Top of the subtree.
        X (array): Design matrix.
        r (array): Residuals of the tree.
        indices (array): Sorted rows associated with the branch.

    """
    left_indices, right_indices = branch.split.partition(X, indices)
    for child, child_indices in ((branch.left, left_indices),
                                 (branch.right, right_indices)):
        if isinstance(child, Leaf):
            child.set_indices(r, child_indices)
        else:
            fix_data(child, X, r, child_indices)

def _route(node, X, rows, y_pred):
    if isinstance(node, Leaf):
        y_pred[rows] = node.value
    else:
        left_rows, right_rows = node.split.partition(X, rows)
        _route(node.left, X, left_rows, y_pred)
        _route(node.right, X, right_rows, y_pred)

###
#Statistics
###

def log_likelihood(node, params):
    """ Marginal log likelihood of the residuals under a node.

    The leaf parameter is integrated out under its normal prior. For a branch
    this is the sum over its leaves.

    Arguments:
        node: Leaf or Branch.
        params (LeafParameters): Current leaf parameters.

    Returns:
        ll (float): Log likelihood.

    """
    if isinstance(node, Branch):
        return log_likelihood(node.left, params) \
            + log_likelihood(node.right, params)

    n = node.n()
    if n == 0:
        return EMPTY_LEAF_LOG_LIKELIHOOD
    a = 1.0 / params.sigma_prior**2
    b = n / params.sigma**2
    ll = 0.5 * np.log(a / (a + b))
    ll -= node.r_sigma**2 / (2.0 * params.sigma**2)
    ll -= 0.5 * a * b * node.r_mean**2 / (a + b)
    return ll

def nonterminal_node_prior(alpha, beta, depth):
    """ Prior probability that a node at the given depth is internal. The root
    has depth 1. """
    return alpha * depth**(-beta)

def growth_prior(node, depth, alpha, beta):
    """ Prior probability that a node grows, discounted for sparse nodes. """
    n = train_data_indices(node).shape[0]
    branch_prior = nonterminal_node_prior(alpha, beta, depth)
    if n >= 5:
        return branch_prior
    elif n > 0:
        return 0.001 * branch_prior
    else:
        return 0.0

def _log_node_prior(node, depth, alpha, beta):
    if isinstance(node, Leaf):
        return np.log(1.0 - growth_prior(node, depth, alpha, beta))
    n = train_data_indices(node).shape[0]
    prior = np.log(growth_prior(node, depth, alpha, beta)) - np.log(n)
    return prior \
        + _log_node_prior(node.left, depth + 1, alpha, beta) \
        + _log_node_prior(node.right, depth + 1, alpha, beta)

def log_node_prior(node, depth, alpha, beta):
    """ Log prior of the subtree structure under a node.

    Returns -inf or nan for subtrees that contain empty branches.

    """
    with np.errstate(divide='ignore', invalid='ignore'):
        return _log_node_prior(node, depth, alpha, beta)

def update_leaf_value(node, params, rng):
    """ Draws a posterior sample of the leaf parameter. """
    if not node.is_leaf():
        raise Exception('Not a leaf node!')
    a = 1.0 / params.sigma_prior**2
    b = node.n() / params.sigma**2
    post_mu = b * node.r_mean / (a + b)
    post_sigma = 1.0 / np.sqrt(a + b)
    node.value = post_mu + post_sigma * rng.standard_normal()

###
#Tree
###

class Tree:
    """ Represents a tree made up of branches and leaves.

    Attributes:
        root: Root node (Leaf or Branch).

    """

    def __init__(self, root):
        self.root = root

    def leaf_nodes(self):
        """ Returns all leaves, left to right. """
        leaves = []
        _collect_leaves(self.root, leaves)
        return leaves

    def branches(self):
        """ Returns all branches in pre-order. """
        branches = []
        _collect_branches(self.root, branches)
        return branches

    def grand_branches(self):
        """ Returns all branches with at least one branch child. """
        branches = []
        _collect_grand_branches(self.root, branches)
        return branches

    def nog_branches(self):
        """ Returns all branches whose children are both leaves. """
        branches = []
        _collect_nog_branches(self.root, branches)
        return branches

    def num_leaves(self):
        return len(self.leaf_nodes())

    def depth(self, node):
        """ Returns depth of node (1 for the root, 0 if node is not in the
        tree). """
        return _depth(self.root, node)

    def max_depth(self):
        """ Returns maximum depth of the tree. """
        return max([self.depth(l) for l in self.leaf_nodes()])

    def parent(self, node):
        """ Returns the branch holding node as a child, None for the root. """
        return _parent(self.root, node)

    def replace(self, node, new_node):
        """ Puts new_node in the place of node. """
        parent = self.parent(node)
        if parent is None:
            self.root = new_node
        elif parent.left is node:
            parent.left = new_node
        else:
            parent.right = new_node

    def variables(self):
        """ Returns the split variables of all branches. """
        return [b.split.variable for b in self.branches()]

    def update_statistics(self, r):
        """ Recomputes the statistics of all leaves for new residuals. """
        for leaf in self.leaf_nodes():
            leaf.set_indices(r, leaf.train_data_indices)

    def update_leaf_values(self, params, rng):
        """ Updates the leaf parameters of the tree. """
        for leaf in self.leaf_nodes():
            update_leaf_value(leaf, params, rng)

    def fit(self, N):
        """ Fits training data to tree.

        Arguments:
            N (int): Number of training observations.

        Returns:
            y_hat: Fitted values

        """
        y_hat = np.zeros((N,))
        for leaf in self.leaf_nodes():
            y_hat[leaf.train_data_indices] = leaf.value
        return y_hat

    def predict(self, X):
        """ Performs out-of-sample prediction.

        Arguments:
            X (array): Design matrix of dimension N x J.

        Returns:
            y_pred: predicted values for each row in X

        """
        y_pred = np.zeros((X.shape[0],))
        _route(self.root, X, np.arange(X.shape[0]), y_pred)
        return y_pred
