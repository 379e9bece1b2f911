#!/usr/bin/env python3
"""
model_data.py
=============

In-memory representation of a skinned model: bones, meshes, materials and
shape keys, plus the bone hierarchy helpers the merger relies on.

Cross references (vertex -> bone, vertex -> shape key, mesh -> material) are
plain list indices. Anything that reorders a list must rewrite them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from model_math import Quaternion, Vector2, Vector3, Vector4


class HierarchyError(Exception):
    pass


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class Bone:
    name: str
    parent_index: int = -1
    local_position: Vector3 = field(default_factory=Vector3)
    local_rotation: Quaternion = field(default_factory=Quaternion.identity)
    global_position: Vector3 = field(default_factory=Vector3)
    global_rotation: Quaternion = field(default_factory=Quaternion.identity)
    scale: Vector3 = field(default_factory=lambda: Vector3(1.0, 1.0, 1.0))

    @property
    def is_root(self) -> bool:
        # Anything below -1 means the source had no parent data.
        return self.parent_index < 0


@dataclass
class Weight:
    bone_index: int
    influence: float = 1.0


@dataclass
class ShapeDelta:
    shape_index: int
    delta: Vector3


@dataclass
class Vertex:
    position: Vector3 = field(default_factory=Vector3)
    normal: Vector3 = field(default_factory=Vector3)
    tangent: Vector3 = field(default_factory=Vector3)
    color: Vector4 = field(default_factory=lambda: Vector4(1.0, 1.0, 1.0, 1.0))
    uvs: List[Vector2] = field(default_factory=list)
    weights: List[Weight] = field(default_factory=list)
    shapes: List[ShapeDelta] = field(default_factory=list)

    def normalize_weights(self) -> None:
        """Rescale influences so they sum to 1.0."""
        total = sum(weight.influence for weight in self.weights)
        if total == 0.0:
            return
        multiplier = 1.0 / total
        for weight in self.weights:
            weight.influence *= multiplier


@dataclass
class Face:
    indices: Tuple[int, int, int]

    def __post_init__(self) -> None:
        self.indices = tuple(int(i) for i in self.indices)
        if len(self.indices) != 3:
            raise ValueError(f"Face needs exactly 3 indices, got {len(self.indices)}")


@dataclass
class Mesh:
    vertices: List[Vertex] = field(default_factory=list)
    faces: List[Face] = field(default_factory=list)
    material_indices: List[int] = field(default_factory=list)


DIFFUSE_MAP = "DiffuseMap"
NORMAL_MAP = "NormalMap"
SPECULAR_MAP = "SpecularMap"
GLOSS_MAP = "GlossMap"


@dataclass
class Material:
    name: str
    images: Dict[str, str] = field(default_factory=dict)

    def get_image(self, key: str) -> str:
        return self.images.get(key, "")

    def __str__(self) -> str:
        return self.name


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

@dataclass
class Model:
    name: str = ""
    bones: List[Bone] = field(default_factory=list)
    meshes: List[Mesh] = field(default_factory=list)
    materials: List[Material] = field(default_factory=list)
    shapes: List[str] = field(default_factory=list)

    def has_bone(self, name: str) -> bool:
        return self.bone_index(name) >= 0

    def bone_index(self, name: str) -> int:
        """First index of the bone called *name*, or -1."""
        for index, bone in enumerate(self.bones):
            if bone.name == name:
                return index
        return -1

    def find_bone(self, name: str) -> Optional[Bone]:
        index = self.bone_index(name)
        return self.bones[index] if index >= 0 else None

    def material_index(self, name: str) -> int:
        for index, material in enumerate(self.materials):
            if material.name == name:
                return index
        return -1

    def is_hierarchically_sorted(self) -> bool:
        return all(
            bone.is_root or bone.parent_index < index
            for index, bone in enumerate(self.bones)
        )

    def hierarchical_sort(self) -> None:
        """Reorder bones so every parent precedes its children.

        Parent indices and vertex weight bone indices are rewritten through
        the same permutation. Raises HierarchyError on a dangling parent index
        or a cycle; the model is left untouched in that case.
        """
        if not self.bones:
            return

        order = hierarchy_order(self.bones)
        remap = [0] * len(self.bones)
        for new_index, old_index in enumerate(order):
            remap[old_index] = new_index

        sorted_bones = [self.bones[old_index] for old_index in order]
        for bone in sorted_bones:
            if not bone.is_root:
                bone.parent_index = remap[bone.parent_index]

        for mesh in self.meshes:
            for vertex in mesh.vertices:
                for weight in vertex.weights:
                    if 0 <= weight.bone_index < len(remap):
                        weight.bone_index = remap[weight.bone_index]

        self.bones = sorted_bones

    def generate_global_bone_data(self, requires_sort: bool = False) -> None:
        """Recompute global transforms from local ones, parents first."""
        if requires_sort:
            self.hierarchical_sort()

        for bone in self.bones:
            if not bone.is_root:
                parent = self.bones[bone.parent_index]
                bone.global_position = (
                    parent.global_position
                    + parent.global_rotation.to_matrix().transform_vector(bone.local_position)
                )
                bone.global_rotation = parent.global_rotation * bone.local_rotation
            else:
                bone.global_position = bone.local_position
                bone.global_rotation = bone.local_rotation

    def generate_local_bone_data(self, requires_sort: bool = False) -> None:
        """Recompute local transforms from global ones."""
        if requires_sort:
            self.hierarchical_sort()

        for bone in self.bones:
            if not bone.is_root:
                parent = self.bones[bone.parent_index]
                parent_inverse = parent.global_rotation.inverse()
                bone.local_position = parent_inverse.to_matrix().transform_vector(
                    bone.global_position - parent.global_position
                )
                bone.local_rotation = parent_inverse * bone.global_rotation
            else:
                bone.local_position = bone.global_position
                bone.local_rotation = bone.global_rotation

    def scale(self, value: float) -> None:
        if value == 1.0:
            return

        for bone in self.bones:
            bone.local_position = bone.local_position * value
            bone.global_position = bone.global_position * value

        for mesh in self.meshes:
            for vertex in mesh.vertices:
                vertex.position = vertex.position * value


# ---------------------------------------------------------------------------
# Hierarchy helpers
# ---------------------------------------------------------------------------

def hierarchy_order(bones: List[Bone]) -> List[int]:
    """Return bone indices in parent-before-child (depth-first) order.

    Roots are visited in list order (a stable sort by parent index puts them
    first) and each bone's subtree follows it, children in list order.
    """
    count = len(bones)
    children: List[List[int]] = [[] for _ in range(count)]
    roots: List[int] = []

    for index, bone in enumerate(bones):
        if bone.is_root:
            roots.append(index)
        elif bone.parent_index >= count:
            raise HierarchyError(
                f"Cyclic or invalid hierarchy: bone {bone.name!r} has dangling parent index "
                f"{bone.parent_index} (bone count {count})"
            )
        else:
            children[bone.parent_index].append(index)

    order: List[int] = []
    visited = [False] * count
    for root in roots:
        stack = [root]
        while stack:
            index = stack.pop()
            if visited[index]:
                raise HierarchyError(
                    f"Cyclic or invalid hierarchy: bone {bones[index].name!r} reached twice"
                )
            visited[index] = True
            order.append(index)
            stack.extend(reversed(children[index]))

    if len(order) != count:
        unreachable = [bones[i].name for i in range(count) if not visited[i]]
        raise HierarchyError(
            f"Cyclic or invalid hierarchy: bones not reachable from a root: {unreachable}"
        )

    return order
