"""Functions intended to be shared across the test suite."""

import numpy as np

from bartree import Branch, Leaf, Split, Tree, fix_data, train_data_indices


def manual_tree(X, r, spec):
    """Build a tree from nested tuples.

    `spec` is either None (a leaf) or `(variable, condition, left, right)`.
    The rows of X are routed down the tree.
    """

    def build(spec):
        if spec is None:
            return Leaf(r, np.arange(0))
        variable, condition, left, right = spec
        return Branch(Split(variable, condition), build(left), build(right))

    root = build(spec)
    indices = np.arange(X.shape[0])
    if isinstance(root, Leaf):
        root.set_indices(r, indices)
    else:
        fix_data(root, X, r, indices)
    return Tree(root)


def snapshot(node):
    """Return a hashable description of a subtree, including leaf data."""
    if isinstance(node, Leaf):
        return (
            'leaf',
            tuple(node.train_data_indices.tolist()),
            node.r_mean,
            node.r_sigma,
            node.value,
        )
    return (
        'branch',
        node.split.variable,
        node.split.condition,
        snapshot(node.left),
        snapshot(node.right),
    )


def check_partition(tree, N):
    """Check that the leaves partition the training rows consistently."""
    np.testing.assert_array_equal(train_data_indices(tree.root), np.arange(N))
    for branch in tree.branches():
        left = train_data_indices(branch.left)
        right = train_data_indices(branch.right)
        assert np.intersect1d(left, right).size == 0
        np.testing.assert_array_equal(
            np.union1d(left, right), train_data_indices(branch)
        )


def check_statistics(tree, r):
    """Check that the leaf statistics match the residuals at their rows."""
    for leaf in tree.leaf_nodes():
        if leaf.n() == 0:
            assert leaf.r_mean == 0.0
            assert leaf.r_sigma == 1.0
        else:
            rl = r[leaf.train_data_indices]
            np.testing.assert_allclose(leaf.r_mean, rl.mean(), atol=1e-12)
            np.testing.assert_allclose(
                leaf.r_sigma, np.sum((rl - rl.mean()) ** 2), atol=1e-12
            )
