"""
dashboard/points.py

Synthetic 3D points for the /dashboard stream.

Each point is a spherical sample with a uniformly drawn radius:
    r     ~ U[0, 1)
    theta = pi  * U[0, 1)
    phi   = 2pi * U[0, 1)
so points fill the unit ball, denser towards the centre (r is not
cube-root transformed). The dashboard client renders exactly this cloud.
"""

import math
import random
from typing import Optional

from pydantic import BaseModel

# Fixed-point rendering, never scientific notation
MESSAGE_FORMAT = '{"x": %f, "y": %f, "z": %f}'


class Point(BaseModel):
    x: float
    y: float
    z: float

    def to_message(self) -> str:
        """Wire form: one JSON object with exactly the keys x, y, z."""
        return MESSAGE_FORMAT % (self.x, self.y, self.z)


def spherical_to_cartesian(r: float, theta: float, phi: float) -> Point:
    sin_theta = math.sin(theta)
    return Point(
        x=r * sin_theta * math.cos(phi),
        y=r * sin_theta * math.sin(phi),
        z=r * math.cos(theta),
    )


def random_point(rng: Optional[random.Random] = None) -> Point:
    """
    Draw one point inside the unit ball.

    Args:
        rng: generator to draw from. Streams pass their own instance so no
             random state is shared between connections; defaults to a
             freshly seeded generator.
    """
    rng = rng or random.Random()
    r     = rng.random()
    theta = math.pi * rng.random()
    phi   = 2.0 * math.pi * rng.random()
    return spherical_to_cartesian(r, theta, phi)
