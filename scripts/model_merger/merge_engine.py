#!/usr/bin/env python3
"""
merge_engine.py
===============

Folds a set of partial models (each a skeleton plus skinned meshes) into one
model whose skeleton is the union of all input skeletons.

Each partial model attaches to the others through its first bone (the
attachment root). A model is folded once its attachment root exists in the
accumulated skeleton; its geometry is then moved rigidly so the model's
attachment root lines up with the matching bone already in place.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from model_data import Bone, Material, Mesh, Model, ShapeDelta, Vertex, Weight, hierarchy_order
from model_math import Matrix, Vector3


class MergeError(Exception):
    pass


class UnresolvableDependencyError(MergeError):
    pass


class ShapeKeyPolicy(enum.Enum):
    """How shape keys with the same name from different models are combined."""

    MERGE_BY_NAME = "merge"
    KEEP_DISTINCT = "distinct"


@dataclass
class MergeResult:
    model: Model
    root_name: str
    fold_order: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Alignment:
    translation: Vector3
    rotation: Matrix

    def apply_point(self, point: Vector3) -> Vector3:
        return self.rotation.transform_vector(point) + self.translation

    def apply_direction(self, direction: Vector3) -> Vector3:
        return self.rotation.transform_vector(direction)


IDENTITY_ALIGNMENT = Alignment(Vector3(0.0, 0.0, 0.0), Matrix.identity())


def attachment_root(model: Model) -> Optional[str]:
    return model.bones[0].name if model.bones else None


def _bone_names(model: Model) -> Set[str]:
    return {bone.name for bone in model.bones}


# ---------------------------------------------------------------------------
# Root selection and merge planning
# ---------------------------------------------------------------------------

def select_root_model(models: Sequence[Model]) -> Model:
    """Pick the first model whose attachment root no other model owns."""
    if not models:
        raise MergeError("No usable root model: no models were given")

    name_sets = [_bone_names(model) for model in models]
    for index, model in enumerate(models):
        root_name = attachment_root(model)
        if root_name is None:
            continue
        owned_elsewhere = any(
            root_name in names for other, names in enumerate(name_sets) if other != index
        )
        if not owned_elsewhere:
            return model

    return models[0]


def build_dependency_graph(models: Sequence[Model]) -> Dict[int, List[int]]:
    """Map each model index to the indices of the other models owning its attachment root."""
    name_sets = [_bone_names(model) for model in models]
    graph: Dict[int, List[int]] = {}
    for index, model in enumerate(models):
        root_name = attachment_root(model)
        if root_name is None:
            graph[index] = []
            continue
        graph[index] = [
            other for other, names in enumerate(name_sets)
            if other != index and root_name in names
        ]
    return graph


def plan_merge_order(models: Sequence[Model], root: Model) -> List[Model]:
    """Return the models in fold order, *root* first.

    A model is ready once its attachment root is part of the accumulated
    skeleton, or when no other model owns that bone. Models are taken in
    input order pass after pass, so the result matches a breadth-first walk
    of the dependency graph. A pass that folds nothing means the remaining
    models depend on each other and raises UnresolvableDependencyError.
    """
    graph = build_dependency_graph(models)
    root_position = next(i for i, model in enumerate(models) if model is root)

    known_bones = _bone_names(root)
    order = [root_position]
    pending = [i for i in range(len(models)) if i != root_position]

    while pending:
        progressed = False
        still_pending: List[int] = []
        for index in pending:
            root_name = attachment_root(models[index])
            ready = not graph[index] or (root_name is not None and root_name in known_bones)
            if ready:
                order.append(index)
                known_bones |= _bone_names(models[index])
                progressed = True
            else:
                still_pending.append(index)
        if not progressed:
            stalled = ", ".join(
                f"{models[i].name} (needs {attachment_root(models[i])!r})" for i in still_pending
            )
            raise UnresolvableDependencyError(f"Unresolvable model dependency: {stalled}")
        pending = still_pending

    return [models[i] for i in order]


# ---------------------------------------------------------------------------
# Folding
# ---------------------------------------------------------------------------

def compute_alignment(
    accumulated: Model,
    model: Model,
    root_name: Optional[str] = None,
) -> Alignment:
    """Rigid transform taking *model*'s frame onto the matching bone in *accumulated*.

    *root_name* defaults to the model's current bone 0; pass the name captured
    before any reordering of the model's bones.
    """
    if root_name is None:
        root_name = attachment_root(model)
    if root_name is None:
        return IDENTITY_ALIGNMENT

    source = model.find_bone(root_name)
    target = accumulated.find_bone(root_name)
    if source is None or target is None:
        return IDENTITY_ALIGNMENT

    translation = target.global_position - source.global_position
    rotation = (target.global_rotation * source.global_rotation.inverse()).to_matrix()
    return Alignment(translation, rotation)


def _merge_bones(accumulated: Model, model: Model) -> int:
    added = 0
    for old_index in hierarchy_order(model.bones):
        bone = model.bones[old_index]
        if accumulated.has_bone(bone.name):
            continue

        parent_index = bone.parent_index
        if not bone.is_root:
            parent_index = accumulated.bone_index(model.bones[bone.parent_index].name)

        accumulated.bones.append(Bone(
            name=bone.name,
            parent_index=parent_index,
            local_position=bone.local_position,
            local_rotation=bone.local_rotation,
            scale=bone.scale,
        ))
        added += 1
    return added


def _merge_shapes(accumulated: Model, model: Model, policy: ShapeKeyPolicy) -> List[int]:
    """Append the model's shape keys and return its shape index -> merged index map."""
    remap: List[int] = []
    for shape in model.shapes:
        if policy is ShapeKeyPolicy.MERGE_BY_NAME and shape in accumulated.shapes:
            remap.append(accumulated.shapes.index(shape))
        else:
            accumulated.shapes.append(shape)
            remap.append(len(accumulated.shapes) - 1)
    return remap


def _merge_materials(accumulated: Model, model: Model) -> List[int]:
    remap: List[int] = []
    for material in model.materials:
        index = accumulated.material_index(material.name)
        if index < 0:
            accumulated.materials.append(Material(material.name, dict(material.images)))
            index = len(accumulated.materials) - 1
        remap.append(index)
    return remap


def _lookup(remap: List[int], index: int, what: str, model_name: str) -> int:
    if not 0 <= index < len(remap):
        raise MergeError(
            f"Invalid {what} index {index} in {model_name} (expected 0..{len(remap) - 1})"
        )
    return remap[index]


def _remap_vertex(
    vertex: Vertex,
    bone_remap: List[int],
    shape_remap: List[int],
    alignment: Alignment,
    model_name: str,
) -> Vertex:
    return Vertex(
        position=alignment.apply_point(vertex.position),
        normal=alignment.apply_direction(vertex.normal),
        tangent=vertex.tangent,
        color=vertex.color,
        uvs=list(vertex.uvs),
        weights=[
            Weight(_lookup(bone_remap, w.bone_index, "bone", model_name), w.influence)
            for w in vertex.weights
        ],
        shapes=[
            ShapeDelta(
                _lookup(shape_remap, s.shape_index, "shape", model_name),
                alignment.apply_direction(s.delta),
            )
            for s in vertex.shapes
        ],
    )


def fold_model(
    accumulated: Model,
    model: Model,
    shape_policy: ShapeKeyPolicy = ShapeKeyPolicy.MERGE_BY_NAME,
) -> None:
    """Fold *model* into *accumulated* in place.

    *model* is modified too: an unsorted skeleton is put in parent-first
    order (weights follow the new bone indices) and its global bone
    transforms are recomputed from the local ones. Meshes and materials
    appended to *accumulated* are copies.

    Raises MergeError when a vertex references a bone or shape index
    outside *model*'s tables.
    """
    root_name = attachment_root(model)
    added = _merge_bones(accumulated, model)
    shape_remap = _merge_shapes(accumulated, model, shape_policy)

    accumulated.generate_global_bone_data()
    model.generate_global_bone_data(requires_sort=not model.is_hierarchically_sorted())

    alignment = compute_alignment(accumulated, model, root_name)
    material_remap = _merge_materials(accumulated, model)
    bone_remap = [accumulated.bone_index(bone.name) for bone in model.bones]

    for mesh in model.meshes:
        accumulated.meshes.append(Mesh(
            vertices=[
                _remap_vertex(vertex, bone_remap, shape_remap, alignment, model.name)
                for vertex in mesh.vertices
            ],
            faces=list(mesh.faces),
            material_indices=[
                material_remap[i] if 0 <= i < len(material_remap) else -1
                for i in mesh.material_indices
            ],
        ))

    logging.debug(
        "Folded %s: %d new bones, %d meshes, translation=(%.4f, %.4f, %.4f)",
        model.name, added, len(model.meshes), *alignment.translation,
    )


def merge_models(
    models: Sequence[Model],
    shape_policy: ShapeKeyPolicy = ShapeKeyPolicy.MERGE_BY_NAME,
) -> MergeResult:
    """Merge *models* (already ordered by source name) into their root model."""
    root = select_root_model(models)
    logging.info("Using %s as root model", root.name)

    plan = plan_merge_order(models, root)
    if not root.is_hierarchically_sorted():
        root.hierarchical_sort()

    result = MergeResult(model=root, root_name=root.name, fold_order=[root.name])
    for model in plan[1:]:
        logging.info("Merging %s", model.name)
        fold_model(root, model, shape_policy)
        result.fold_order.append(model.name)
        logging.info("Merged %s", model.name)

    return result
