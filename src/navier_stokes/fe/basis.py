"""Lagrange P1/P2 basis functions and quadrature rules on the reference triangle.

Reference triangle: v0 = (0, 0), v1 = (1, 0), v2 = (0, 1), with barycentric
coordinates l0 = 1 - xi - eta, l1 = xi, l2 = eta.

P2 local node order: vertices 0, 1, 2, then edge midpoints of (0, 1), (1, 2), (2, 0).
"""

import numpy as np

REFERENCE_VERTICES = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])

# Gradients of the barycentric coordinates (constant on the reference cell)
_GRAD_LAMBDA = np.array([[-1.0, -1.0], [1.0, 0.0], [0.0, 1.0]])

# Vertex pairs of the P2 edge nodes
_P2_EDGE_NODES = np.array([[0, 1], [1, 2], [2, 0]])


def triangle_quadrature():
    """7-point rule exact for polynomials of degree 5 (weights sum to 1/2)."""
    s15 = np.sqrt(15.0)
    a1, b1 = (6.0 - s15) / 21.0, (9.0 + 2.0 * s15) / 21.0
    a2, b2 = (6.0 + s15) / 21.0, (9.0 - 2.0 * s15) / 21.0
    w1 = (155.0 - s15) / 2400.0
    w2 = (155.0 + s15) / 2400.0
    points = np.array([
        [1.0 / 3.0, 1.0 / 3.0],
        [a1, a1], [b1, a1], [a1, b1],
        [a2, a2], [b2, a2], [a2, b2],
    ])
    weights = np.array([9.0 / 80.0, w1, w1, w1, w2, w2, w2])
    return points, weights


def line_quadrature(n_points=3):
    """Gauss-Legendre rule on [0, 1]."""
    x, w = np.polynomial.legendre.leggauss(n_points)
    return 0.5 * (x + 1.0), 0.5 * w


def barycentric(points):
    points = np.atleast_2d(points)
    xi, eta = points[:, 0], points[:, 1]
    return np.column_stack([1.0 - xi - eta, xi, eta])


def p1_values(points):
    """P1 basis values, shape (n_points, 3)."""
    return barycentric(points)


def p1_gradients(points):
    """Reference gradients of the P1 basis, shape (n_points, 3, 2)."""
    n = np.atleast_2d(points).shape[0]
    return np.broadcast_to(_GRAD_LAMBDA, (n, 3, 2)).copy()


def p2_values(points):
    """P2 basis values, shape (n_points, 6)."""
    lam = barycentric(points)
    vertex = lam * (2.0 * lam - 1.0)
    edge = 4.0 * lam[:, _P2_EDGE_NODES[:, 0]] * lam[:, _P2_EDGE_NODES[:, 1]]
    return np.hstack([vertex, edge])


def p2_gradients(points):
    """Reference gradients of the P2 basis, shape (n_points, 6, 2)."""
    lam = barycentric(points)
    n = lam.shape[0]
    grads = np.empty((n, 6, 2))
    grads[:, :3, :] = (4.0 * lam - 1.0)[:, :, None] * _GRAD_LAMBDA[None, :, :]
    a, b = _P2_EDGE_NODES[:, 0], _P2_EDGE_NODES[:, 1]
    grads[:, 3:, :] = 4.0 * (
        lam[:, a, None] * _GRAD_LAMBDA[None, b, :] + lam[:, b, None] * _GRAD_LAMBDA[None, a, :]
    )
    return grads
