"""Boundary-value problems: boundary tags, data functions and initial conditions.

All data functions take coordinate arrays ``x, y`` of equal shape and a time
``t``. Vector-valued functions return an array of shape ``x.shape + (2,)``.
"""

import numpy as np

from .meshing import LEFT, RIGHT


def _zero_vector(x):
    return np.zeros(np.shape(x) + (2,))


class Problem:
    """Base problem: zero data everywhere, inlet on the left, outlet on the right.

    Every boundary tag that is neither an inlet nor a Neumann tag is a wall.
    """

    name = "problem"
    inlet_tags = (LEFT,)
    neumann_tags = (RIGHT,)

    # Viscosity the data was derived for; None when the data does not depend on it
    nu = None

    def forcing(self, x, y, t):
        return _zero_vector(x)

    def inlet_velocity(self, x, y, t):
        return _zero_vector(x)

    def wall_velocity(self, x, y, t):
        return _zero_vector(x)

    def neumann(self, x, y, t, normal):
        """Prescribed traction on Neumann edges; ``normal`` broadcasts against ``x``."""
        return _zero_vector(x)

    def initial_velocity(self, x, y, t=0.0):
        return _zero_vector(x)

    def initial_pressure(self, x, y, t=0.0):
        return np.zeros(np.shape(x))

    def exact_velocity(self, x, y, t):
        raise NotImplementedError(f"{type(self).__name__} has no exact solution")

    def __repr__(self):
        return (
            f"{type(self).__name__}(inlet_tags={self.inlet_tags}, "
            f"neumann_tags={self.neumann_tags})"
        )


class InletCavityProblem(Problem):
    """Channel-like cavity: uniform inflow on the left, do-nothing outflow on the right.

    Parameters
    ----------
    inlet_speed : float
        x-velocity prescribed on the inlet.
    g : float
        Magnitude of the downward body force ``f = (0, -g)``.
    """

    name = "inlet_cavity"

    def __init__(self, inlet_speed=1.0, g=0.0):
        self.inlet_speed = float(inlet_speed)
        self.g = float(g)

    def forcing(self, x, y, t):
        f = _zero_vector(x)
        f[..., 1] = -self.g
        return f

    def inlet_velocity(self, x, y, t):
        u = _zero_vector(x)
        u[..., 0] = self.inlet_speed
        return u


class ManufacturedStokesProblem(Problem):
    """Steady Stokes flow with a known smooth solution on the unit square.

    u = (pi sin(pi x) cos(pi y), -pi cos(pi x) sin(pi y)), p = sin(pi x) sin(pi y).

    Exact velocities are imposed on the left, bottom and top sides; the right
    side carries the exact traction ``nu grad(u) n - p n``. Meant to be run
    without convection and with a very large time step.
    """

    name = "manufactured_stokes"
    inlet_tags = (LEFT,)
    neumann_tags = (RIGHT,)

    def __init__(self, nu=1.0):
        self.nu = float(nu)

    def exact_velocity(self, x, y, t=0.0):
        u = np.empty(np.shape(x) + (2,))
        u[..., 0] = np.pi * np.sin(np.pi * x) * np.cos(np.pi * y)
        u[..., 1] = -np.pi * np.cos(np.pi * x) * np.sin(np.pi * y)
        return u

    def exact_pressure(self, x, y, t=0.0):
        return np.sin(np.pi * x) * np.sin(np.pi * y)

    def velocity_gradient(self, x, y):
        """grad(u)[..., i, j] = d u_i / d x_j."""
        pi2 = np.pi**2
        grad = np.empty(np.shape(x) + (2, 2))
        grad[..., 0, 0] = pi2 * np.cos(np.pi * x) * np.cos(np.pi * y)
        grad[..., 0, 1] = -pi2 * np.sin(np.pi * x) * np.sin(np.pi * y)
        grad[..., 1, 0] = pi2 * np.sin(np.pi * x) * np.sin(np.pi * y)
        grad[..., 1, 1] = -pi2 * np.cos(np.pi * x) * np.cos(np.pi * y)
        return grad

    def forcing(self, x, y, t):
        # -nu lap(u) + grad(p), with lap(u) = -2 pi^2 u
        f = 2.0 * self.nu * np.pi**2 * self.exact_velocity(x, y)
        f[..., 0] += np.pi * np.cos(np.pi * x) * np.sin(np.pi * y)
        f[..., 1] += np.pi * np.sin(np.pi * x) * np.cos(np.pi * y)
        return f

    def inlet_velocity(self, x, y, t):
        return self.exact_velocity(x, y, t)

    def wall_velocity(self, x, y, t):
        return self.exact_velocity(x, y, t)

    def neumann(self, x, y, t, normal):
        normal = np.broadcast_to(normal, np.shape(x) + (2,))
        grad = self.velocity_gradient(x, y)
        p = self.exact_pressure(x, y)
        return self.nu * np.einsum("...ij,...j->...i", grad, normal) - p[..., None] * normal
