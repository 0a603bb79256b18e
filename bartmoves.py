import numpy as np

from bartree import Branch, Leaf, Split, fix_data, growth_prior, \
    log_likelihood, log_node_prior, train_data_indices

def acceptance_probability(log_alpha):
    """ Maps a log acceptance ratio to a probability. Non-finite ratios are
    rejected. """
    if not np.isfinite(log_alpha):
        return 0.0
    return float(np.exp(min(log_alpha, 0.0)))

###
#Birth / death
###

def probability_node_birth(tree):
    """ Probability of proposing a birth rather than a death. """
    return 1.0 if isinstance(tree.root, Leaf) else 0.5

def birth_node(tree, rng):
    """ Selects the leaf to grow and the probability of selecting it. """
    if isinstance(tree.root, Leaf):
        return tree.root, 1.0
    leaf_nodes = tree.leaf_nodes()
    leaf = leaf_nodes[rng.integers(len(leaf_nodes))]
    return leaf, 1.0 / len(leaf_nodes)

def death_node(tree, rng):
    """ Selects the nog branch to collapse and the probability of selecting
    it. """
    nog_branches = tree.nog_branches()
    return nog_branches[rng.integers(len(nog_branches))], \
        1.0 / len(nog_branches)

def grow_branch(leaf, split, X, r):
    """ Builds the branch a leaf would become under the given split. The leaf
    itself is not modified. """
    left_indices, right_indices = split.partition(X, leaf.train_data_indices)
    return Branch(split, Leaf(r, left_indices), Leaf(r, right_indices))

def collapse_branch(branch, r):
    """ Builds the leaf a nog branch would collapse into. """
    indices = np.sort(np.concatenate(
        (branch.left.train_data_indices, branch.right.train_data_indices)))
    return Leaf(r, indices)

def birth_log_tree_structure_ratio(leaf_prior, left_prior, right_prior):
    """ Calculates the log tree structure ratio for the birth proposal. """
    return np.log(leaf_prior) + np.log(1.0 - left_prior) \
        + np.log(1.0 - right_prior) - np.log(1.0 - leaf_prior)

def birth_log_transition_ratio(p_death, p_nog, p_birth, p_leaf):
    """ Calculates the log transition ratio for the birth proposal. """
    return np.log(p_death) + np.log(p_nog) - np.log(p_birth) - np.log(p_leaf)

def death_log_tree_structure_ratio(prior_grow, left_prior, right_prior):
    """ Calculates the log tree structure ratio for the death proposal. """
    return -birth_log_tree_structure_ratio(prior_grow, left_prior, right_prior)

def death_log_transition_ratio(p_birth, p_leaf, p_death, p_nog):
    """ Calculates the log transition ratio for the death proposal. """
    return np.log(p_birth) + np.log(p_leaf) - np.log(p_death) - np.log(p_nog)

def birth_log_ratio_terms(forest, tree, leaf, branch, leaf_probability,
                          probability_birth):
    """ Calculates the terms of the log acceptance ratio for turning leaf
    into branch.

    Arguments:
        forest: Ensemble holding options and leaf parameters.
        tree: Tree containing leaf.
        leaf (Leaf): Leaf to grow.
        branch (Branch): Proposed replacement of leaf.
        leaf_probability (float): Probability of having selected leaf.
        probability_birth (float): Probability of having proposed a birth.

    Returns:
        log_tree_structure_ratio, log_transition_ratio, log_likelihood_ratio

    """
    opts = forest.options
    params = forest.leaf_parameters
    leaf_depth = tree.depth(leaf)
    leaf_prior = growth_prior(leaf, leaf_depth, opts.alpha, opts.beta)
    left_prior = growth_prior(branch.left, leaf_depth + 1, opts.alpha,
                              opts.beta)
    right_prior = growth_prior(branch.right, leaf_depth + 1, opts.alpha,
                               opts.beta)

    #Number of nog branches after the birth
    parent_branch = tree.parent(leaf)
    num_nog_branches = len(tree.nog_branches())
    if parent_branch is None or parent_branch.is_grand():
        num_nog_branches += 1

    log_tree_structure_ratio = birth_log_tree_structure_ratio(
        leaf_prior, left_prior, right_prior)
    log_transition_ratio = birth_log_transition_ratio(
        0.5, 1.0 / num_nog_branches, probability_birth, leaf_probability)
    log_likelihood_ratio = log_likelihood(branch, params) \
        - log_likelihood(leaf, params)
    return log_tree_structure_ratio, log_transition_ratio, \
        log_likelihood_ratio

def death_log_ratio_terms(forest, tree, branch, leaf, p_nog,
                          probability_death):
    """ Calculates the terms of the log acceptance ratio for collapsing
    branch into leaf (see birth_log_ratio_terms). """
    opts = forest.options
    params = forest.leaf_parameters
    branch_depth = tree.depth(branch)
    left_prior = growth_prior(branch.left, branch_depth + 1, opts.alpha,
                              opts.beta)
    right_prior = growth_prior(branch.right, branch_depth + 1, opts.alpha,
                               opts.beta)
    prior_grow = growth_prior(leaf, branch_depth, opts.alpha, opts.beta)

    probability_birth_after = 1.0 if tree.parent(branch) is None else 0.5
    probability_birth_leaf = 1.0 / (tree.num_leaves() - 1)

    log_tree_structure_ratio = death_log_tree_structure_ratio(
        prior_grow, left_prior, right_prior)
    log_transition_ratio = death_log_transition_ratio(
        probability_birth_after, probability_birth_leaf,
        probability_death, p_nog)
    log_likelihood_ratio = log_likelihood(leaf, params) \
        - log_likelihood(branch, params)
    return log_tree_structure_ratio, log_transition_ratio, \
        log_likelihood_ratio

def node_birth(forest, tree, X, r, probability_birth):
    """ Makes a birth proposal and accepts or rejects it.

    Returns:
        alpha (float): Acceptance probability.
        updated (bool): Whether the proposal was accepted.

    """
    rng = forest.rng
    leaf, leaf_probability = birth_node(tree, rng)
    n = leaf.n()
    if n == 0:
        return 0.0, False

    #Split on a random variable at a random position of its sorted values
    split_variable = rng.integers(X.shape[1])
    split_loc = rng.integers(n)
    feature = X[leaf.train_data_indices, split_variable]
    split_value = np.sort(feature)[split_loc]
    branch = grow_branch(leaf, Split(split_variable, split_value), X, r)

    with np.errstate(divide='ignore', invalid='ignore'):
        log_alpha = sum(birth_log_ratio_terms(
            forest, tree, leaf, branch, leaf_probability, probability_birth))
    alpha = acceptance_probability(log_alpha)

    if rng.random() < alpha:
        tree.replace(leaf, branch)
        return alpha, True
    return alpha, False

def node_death(forest, tree, r, probability_death):
    """ Makes a death proposal and accepts or rejects it. """
    rng = forest.rng
    branch, p_nog = death_node(tree, rng)
    leaf = collapse_branch(branch, r)

    with np.errstate(divide='ignore', invalid='ignore'):
        log_alpha = sum(death_log_ratio_terms(
            forest, tree, branch, leaf, p_nog, probability_death))
    alpha = acceptance_probability(log_alpha)

    if rng.random() < alpha:
        tree.replace(branch, leaf)
        return alpha, True
    return alpha, False

def node_birth_death(forest, tree, X, r):
    """ Proposes a birth or, if the tree has branches, possibly a death. """
    probability_birth = probability_node_birth(tree)
    if forest.rng.random() < probability_birth:
        return node_birth(forest, tree, X, r, probability_birth)
    return node_death(forest, tree, r, 1.0 - probability_birth)

###
#Change / swap
###

def _subtree_log_posterior(forest, branch, branch_depth):
    opts = forest.options
    return log_node_prior(branch, branch_depth, opts.alpha, opts.beta) \
        + log_likelihood(branch, forest.leaf_parameters)

def change_decision_rule(forest, tree, X, r):
    """ Proposes a new decision rule for a random branch. On rejection the
    old rule and partition are restored. """
    branches = tree.branches()
    if len(branches) == 0:
        return 0.0, False

    rng = forest.rng
    branch = branches[rng.integers(len(branches))]
    branch_depth = tree.depth(branch)
    indices = train_data_indices(branch)

    old_split = branch.split
    with np.errstate(divide='ignore', invalid='ignore'):
        before = _subtree_log_posterior(forest, branch, branch_depth)

    #Single predictor: keep the variable, draw a new condition
    variables = [j for j in range(X.shape[1]) if j != old_split.variable]
    if len(variables) == 0:
        variables = [old_split.variable]
    new_variable = variables[rng.integers(len(variables))]
    new_condition = X[indices[rng.integers(len(indices))], new_variable]

    branch.split = Split(new_variable, new_condition)
    fix_data(branch, X, r, indices)
    with np.errstate(divide='ignore', invalid='ignore'):
        after = _subtree_log_posterior(forest, branch, branch_depth)
        alpha = acceptance_probability(after - before)

    if rng.random() < alpha:
        return alpha, True
    branch.split = old_split
    fix_data(branch, X, r, indices)
    return alpha, False

def swap_splits(branch, child, X, r, indices):
    """ Exchanges the decision rules of a branch and one of its branch
    children and re-routes the data. Applying it twice restores the tree. """
    branch.split, child.split = child.split, branch.split
    fix_data(branch, X, r, indices)

def swap_decision_rule(forest, tree, X, r):
    """ Proposes to swap the decision rules of a random grandparent branch and
    one of its branch children. """
    branches = tree.grand_branches()
    if len(branches) == 0:
        return 0.0, False

    rng = forest.rng
    branch = branches[rng.integers(len(branches))]
    branch_depth = tree.depth(branch)
    indices = train_data_indices(branch)

    if isinstance(branch.left, Leaf) \
            or (rng.random() < 0.5 and isinstance(branch.right, Branch)):
        child = branch.right
    else:
        child = branch.left

    with np.errstate(divide='ignore', invalid='ignore'):
        before = _subtree_log_posterior(forest, branch, branch_depth)
    swap_splits(branch, child, X, r, indices)
    with np.errstate(divide='ignore', invalid='ignore'):
        after = _subtree_log_posterior(forest, branch, branch_depth)
        alpha = acceptance_probability(after - before)

    if rng.random() < alpha:
        return alpha, True
    swap_splits(branch, child, X, r, indices)
    return alpha, False

def update_tree(forest, tree, X, r):
    """ Performs a Metropolis-Hastings step to update the tree by mutation.

    Arguments:
        forest: Ensemble holding options, leaf parameters and the random
        generator.
        tree: Tree to mutate.
        X (array): Design matrix.
        r (array): Residuals of the tree (response minus all other trees).

    Returns:
        alpha (float): Acceptance probability of the proposal.
        updated (bool): Whether the proposal was accepted.

    """
    probs = forest.options.transform_probabilities
    u = forest.rng.random()
    if u < probs.node_birth_death:
        return node_birth_death(forest, tree, X, r)
    elif u < probs.node_birth_death + probs.change_decision_rule:
        return change_decision_rule(forest, tree, X, r)
    else:
        return swap_decision_rule(forest, tree, X, r)
