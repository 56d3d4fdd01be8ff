import numpy as np
import pytest

from hpadapt.core.mesh import Mesh
from hpadapt.core.space import ApproximationSpace, DirichletBC


def grid_description(nx=1, ny=1, lx=1.0, ly=1.0):
    """Rectangle [0,lx]x[0,ly] split into nx*ny elements; markers 1 S, 2 E, 3 N, 4 W."""
    xs = np.linspace(0.0, lx, nx + 1)
    ys = np.linspace(0.0, ly, ny + 1)
    vid = lambda i, j: j * (nx + 1) + i  # noqa: E731
    vertices = [[float(x), float(y)] for y in ys for x in xs]
    elements = [[vid(i, j), vid(i + 1, j), vid(i + 1, j + 1), vid(i, j + 1), 0] for j in range(ny) for i in range(nx)]
    boundaries = (
        [[vid(i, 0), vid(i + 1, 0), 1] for i in range(nx)]
        + [[vid(nx, j), vid(nx, j + 1), 2] for j in range(ny)]
        + [[vid(i + 1, ny), vid(i, ny), 3] for i in range(nx)]
        + [[vid(0, j + 1), vid(0, j), 4] for j in range(ny)]
    )
    return {"vertices": vertices, "elements": elements, "boundaries": boundaries}


@pytest.fixture
def make_grid():
    def _make(nx=1, ny=1, lx=1.0, ly=1.0):
        return Mesh.from_description(grid_description(nx, ny, lx, ly))
    return _make


@pytest.fixture
def linear_u():
    return lambda x, y: 1.0 + 2.0 * x - y


@pytest.fixture
def make_space(make_grid):
    def _make(g, nx=1, ny=1, p=1, lx=1.0, ly=1.0):
        return ApproximationSpace(make_grid(nx, ny, lx, ly), DirichletBC(g), p_init=p)
    return _make
