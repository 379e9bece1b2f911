#!/usr/bin/env python3
"""
model_math.py
=============

Small value types used by the model merger: vectors, quaternions and square
matrices. Everything here is immutable; operators return new instances.

Quaternions are stored as (x, y, z, w). The Hamilton product and the
quaternion -> rotation matrix derivation follow the conventions used by the
SEModel tooling, and the merge alignment depends on them exactly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

Number = Union[int, float]

# slerp thresholds
SLERP_DOT_THRESHOLD = 0.999
SLERP_SIN_THRESHOLD = 0.001


def clamp(value: float, maximum: float, minimum: float) -> float:
    """Clamp *value* into [minimum, maximum] (argument order kept from the C# helpers)."""
    if value < minimum:
        return minimum
    if value > maximum:
        return maximum
    return value


def cm_to_inch(value: float) -> float:
    return value * 0.3937007874015748031496062992126


# ---------------------------------------------------------------------------
# Vectors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Vector2:
    x: float = 0.0
    y: float = 0.0

    def __iter__(self):
        yield self.x
        yield self.y


@dataclass(frozen=True)
class Vector3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z

    def __add__(self, other: Union[Vector3, Number]) -> Vector3:
        if isinstance(other, Vector3):
            return Vector3(self.x + other.x, self.y + other.y, self.z + other.z)
        return Vector3(self.x + other, self.y + other, self.z + other)

    def __sub__(self, other: Union[Vector3, Number]) -> Vector3:
        if isinstance(other, Vector3):
            return Vector3(self.x - other.x, self.y - other.y, self.z - other.z)
        return Vector3(self.x - other, self.y - other, self.z - other)

    def __mul__(self, other: Union[Vector3, Number]) -> Vector3:
        if isinstance(other, Vector3):
            return Vector3(self.x * other.x, self.y * other.y, self.z * other.z)
        return Vector3(self.x * other, self.y * other, self.z * other)

    def __truediv__(self, other: Union[Vector3, Number]) -> Vector3:
        if isinstance(other, Vector3):
            return Vector3(self.x / other.x, self.y / other.y, self.z / other.z)
        return Vector3(self.x / other, self.y / other, self.z / other)

    def dot(self, other: Vector3) -> float:
        return self.x * other.x + self.y * other.y + self.z * other.z

    def cross(self, other: Vector3) -> Vector3:
        return Vector3(
            self.y * other.z - self.z * other.y,
            self.z * other.x - self.x * other.z,
            self.x * other.y - self.y * other.x,
        )

    def length(self) -> float:
        return math.sqrt(self.dot(self))

    def normalize(self) -> Vector3:
        """Return the unit vector; a zero-length vector normalizes to zero."""
        length = self.length()
        if length == 0.0:
            return Vector3(0.0, 0.0, 0.0)
        return Vector3(self.x / length, self.y / length, self.z / length)

    def lerp(self, target: Vector3, coefficient: float) -> Vector3:
        return Vector3(
            (target.x - self.x) * coefficient + self.x,
            (target.y - self.y) * coefficient + self.y,
            (target.z - self.z) * coefficient + self.z,
        )


@dataclass(frozen=True)
class Vector4:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 0.0

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z
        yield self.w


# ---------------------------------------------------------------------------
# Quaternion
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Quaternion:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0

    @staticmethod
    def identity() -> Quaternion:
        return Quaternion(0.0, 0.0, 0.0, 1.0)

    @staticmethod
    def from_axis_angle(axis: Vector3, radians: float) -> Quaternion:
        """Build a unit quaternion rotating *radians* about *axis*."""
        unit = axis.normalize()
        s = math.sin(radians * 0.5)
        return Quaternion(unit.x * s, unit.y * s, unit.z * s, math.cos(radians * 0.5))

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z
        yield self.w

    def __add__(self, other: Union[Quaternion, Number]) -> Quaternion:
        if isinstance(other, Quaternion):
            return Quaternion(self.x + other.x, self.y + other.y, self.z + other.z, self.w + other.w)
        return Quaternion(self.x + other, self.y + other, self.z + other, self.w + other)

    def __sub__(self, other: Union[Quaternion, Number]) -> Quaternion:
        if isinstance(other, Quaternion):
            return Quaternion(self.x - other.x, self.y - other.y, self.z - other.z, self.w - other.w)
        return Quaternion(self.x - other, self.y - other, self.z - other, self.w - other)

    def __mul__(self, other: Union[Quaternion, Number]) -> Quaternion:
        if isinstance(other, Quaternion):
            a, b = self, other
            return Quaternion(
                a.w * b.x + a.x * b.w + a.y * b.z - a.z * b.y,
                a.w * b.y + a.y * b.w + a.z * b.x - a.x * b.z,
                a.w * b.z + a.z * b.w + a.x * b.y - a.y * b.x,
                a.w * b.w - a.x * b.x - a.y * b.y - a.z * b.z,
            )
        return Quaternion(self.x * other, self.y * other, self.z * other, self.w * other)

    def __truediv__(self, other: Union[Quaternion, Number]) -> Quaternion:
        if isinstance(other, Quaternion):
            return Quaternion(self.x / other.x, self.y / other.y, self.z / other.z, self.w / other.w)
        return Quaternion(self.x / other, self.y / other, self.z / other, self.w / other)

    def dot(self, other: Quaternion) -> float:
        return self.x * other.x + self.y * other.y + self.z * other.z + self.w * other.w

    def inverse(self) -> Quaternion:
        """Conjugate. Only a true inverse for unit quaternions."""
        return Quaternion(-self.x, -self.y, -self.z, self.w)

    def lerp(self, target: Quaternion, coefficient: float) -> Quaternion:
        return Quaternion(
            (target.x - self.x) * coefficient + self.x,
            (target.y - self.y) * coefficient + self.y,
            (target.z - self.z) * coefficient + self.z,
            (target.w - self.w) * coefficient + self.w,
        )

    def slerp(self, target: Quaternion, coefficient: float) -> Quaternion:
        cos_half_theta = self.dot(target)
        if abs(cos_half_theta) >= SLERP_DOT_THRESHOLD:
            return self

        half_theta = math.acos(cos_half_theta)
        sin_half_theta = math.sqrt(1.0 - cos_half_theta * cos_half_theta)
        if sin_half_theta < SLERP_SIN_THRESHOLD:
            return Quaternion(
                (self.x + target.x) * 0.5,
                (self.y + target.y) * 0.5,
                (self.z + target.z) * 0.5,
                (self.w + target.w) * 0.5,
            )

        ratio_a = math.sin((1.0 - coefficient) * half_theta) / sin_half_theta
        ratio_b = math.sin(coefficient * half_theta) / sin_half_theta
        return Quaternion(
            ratio_a * self.x + ratio_b * target.x,
            ratio_a * self.y + ratio_b * target.y,
            ratio_a * self.z + ratio_b * target.z,
            ratio_a * self.w + ratio_b * target.w,
        )

    def to_matrix(self) -> Matrix:
        """Quaternion-derived 3x3 rotation matrix (row-major)."""
        xx = self.x * self.x
        yy = self.y * self.y
        zz = self.z * self.z
        xy = self.x * self.y
        xz = self.x * self.z
        xw = self.x * self.w
        yz = self.y * self.z
        yw = self.y * self.w
        zw = self.z * self.w
        return Matrix([
            [1.0 - 2.0 * (yy + zz), 2.0 * (xy - zw), 2.0 * (xz + yw)],
            [2.0 * (xy + zw), 1.0 - 2.0 * (xx + zz), 2.0 * (yz - xw)],
            [2.0 * (xz - yw), 2.0 * (yz + xw), 1.0 - 2.0 * (xx + yy)],
        ])

    def to_euler(self) -> Vector3:
        """Euler angles in radians. Gimbal lock is not handled."""
        t0 = 2.0 * (self.w * self.x + self.y * self.z)
        t1 = 1.0 - 2.0 * (self.x * self.x + self.y * self.y)
        t2 = clamp(2.0 * (self.w * self.y - self.z * self.x), 1.0, -1.0)
        t3 = 2.0 * (self.w * self.z + self.x * self.y)
        t4 = 1.0 - 2.0 * (self.y * self.y + self.z * self.z)
        return Vector3(math.atan2(t0, t1), math.asin(t2), math.atan2(t3, t4))


# ---------------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------------

class Matrix:
    """Square matrix of floats.

    Arithmetic operators are element-wise, with either another matrix of the
    same dimension or a scalar. ``transform_vector`` applies the upper 3x3
    block to a Vector3 (row . vector for each row).
    """

    __slots__ = ("values",)

    def __init__(self, values: Optional[Sequence[Sequence[float]]] = None, dimension: int = 3) -> None:
        if values is None:
            self.values: List[List[float]] = [[0.0] * dimension for _ in range(dimension)]
        else:
            self.values = [[float(v) for v in row] for row in values]

    @staticmethod
    def identity(dimension: int = 3) -> Matrix:
        result = Matrix(dimension=dimension)
        for i in range(dimension):
            result.values[i][i] = 1.0
        return result

    @property
    def dimension(self) -> int:
        return len(self.values)

    def __getitem__(self, row: int) -> List[float]:
        return self.values[row]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.values == other.values

    def __repr__(self) -> str:
        return f"Matrix({self.values!r})"

    def _elementwise(self, other: Union[Matrix, Number], op) -> Matrix:
        size = self.dimension
        result = Matrix(dimension=size)
        if isinstance(other, Matrix):
            if other.dimension != size:
                raise ValueError(f"Matrix dimension mismatch: {size} vs {other.dimension}")
            for r in range(size):
                for c in range(size):
                    result.values[r][c] = op(self.values[r][c], other.values[r][c])
        else:
            for r in range(size):
                for c in range(size):
                    result.values[r][c] = op(self.values[r][c], other)
        return result

    def __add__(self, other: Union[Matrix, Number]) -> Matrix:
        return self._elementwise(other, lambda a, b: a + b)

    def __sub__(self, other: Union[Matrix, Number]) -> Matrix:
        return self._elementwise(other, lambda a, b: a - b)

    def __mul__(self, other: Union[Matrix, Number]) -> Matrix:
        return self._elementwise(other, lambda a, b: a * b)

    def __truediv__(self, other: Union[Matrix, Number]) -> Matrix:
        return self._elementwise(other, lambda a, b: a / b)

    def transform_vector(self, vector: Vector3) -> Vector3:
        m = self.values
        return Vector3(
            vector.dot(Vector3(m[0][0], m[0][1], m[0][2])),
            vector.dot(Vector3(m[1][0], m[1][1], m[1][2])),
            vector.dot(Vector3(m[2][0], m[2][1], m[2][2])),
        )
