#!/usr/bin/env python3
"""
model_export.py
===============

Plain-text exporters (Wavefront OBJ, Source SMD, XNALara ASCII) and the
extension-based ``save_model`` dispatcher. SEModel output is delegated to
semodel_codec.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, List

from model_data import Mesh, Model
from model_math import Vector2
from semodel_codec import write_semodel

SUPPORTED_EXTENSIONS = (".semodel", ".obj", ".smd", ".ascii")


def _mesh_material_name(model: Model, mesh: Mesh) -> str:
    if mesh.material_indices and 0 <= mesh.material_indices[0] < len(model.materials):
        return model.materials[mesh.material_indices[0]].name
    return "default"


def _first_uv(uvs: List[Vector2]) -> Vector2:
    return uvs[0] if uvs else Vector2(0.0, 0.0)


def model_to_obj(model: Model) -> str:
    lines: List[str] = []
    global_vertex_index = 1

    for mesh in model.meshes:
        material = _mesh_material_name(model, mesh)
        lines.append(f"usemtl {material}")
        lines.append(f"o {material}")
        lines.append(f"g {material}")

        for vertex in mesh.vertices:
            p = vertex.position
            lines.append(f"v {p.x:.5f} {p.y:.5f} {p.z:.5f}")
        for vertex in mesh.vertices:
            n = vertex.normal
            lines.append(f"vn {n.x:.5f} {n.y:.5f} {n.z:.5f}")
        for vertex in mesh.vertices:
            uv = _first_uv(vertex.uvs)
            lines.append(f"vt {uv.x:.5f} {uv.y:.5f}")

        for face in mesh.faces:
            refs = " ".join(
                "{0}/{0}/{0}".format(global_vertex_index + index) for index in face.indices
            )
            lines.append(f"f {refs}")

        global_vertex_index += len(mesh.vertices)

    return "\n".join(lines) + "\n"


def model_to_smd(model: Model) -> str:
    lines: List[str] = ["version 1", "nodes"]
    for index, bone in enumerate(model.bones):
        lines.append(f'{index} "{bone.name}" {bone.parent_index}')
    lines.append("end")

    lines.append("skeleton")
    lines.append("time 0")
    for index, bone in enumerate(model.bones):
        p = bone.local_position
        r = bone.local_rotation.to_euler()
        lines.append(
            f"{index} {p.x:.4f} {p.y:.4f} {p.z:.4f} {r.x:.4f} {r.y:.4f} {r.z:.4f}"
        )
    lines.append("end")

    for mesh in model.meshes:
        material = _mesh_material_name(model, mesh)
        lines.append("triangles")
        for face in mesh.faces:
            lines.append(material)
            for vertex_index in face.indices:
                vertex = mesh.vertices[vertex_index]
                p = vertex.position
                n = vertex.normal.normalize()
                uv = _first_uv(vertex.uvs)
                record = (
                    f"0 {p.x:.4f} {p.y:.4f} {p.z:.4f} {n.x:.4f} {n.y:.4f} {n.z:.4f} "
                    f"{uv.x:.4f} {uv.y:.4f} {len(vertex.weights)}"
                )
                for weight in vertex.weights:
                    record += f" {weight.bone_index} {weight.influence:.4f}"
                lines.append(record)
        lines.append("end")

    return "\n".join(lines) + "\n"


def _color_byte(channel: float) -> int:
    return max(0, min(255, int(channel * 255.0)))


def model_to_xnalara_ascii(model: Model) -> str:
    lines: List[str] = [str(len(model.bones))]
    for bone in model.bones:
        g = bone.global_position
        lines.append(bone.name)
        lines.append(str(bone.parent_index))
        lines.append(f"{g.x} {g.y} {g.z}")

    lines.append(str(len(model.meshes)))
    for mesh in model.meshes:
        lines.append(_mesh_material_name(model, mesh))
        lines.append("1")  # uv layers
        lines.append("0")  # textures
        lines.append(str(len(mesh.vertices)))
        for vertex in mesh.vertices:
            p, n, c = vertex.position, vertex.normal, vertex.color
            uv = _first_uv(vertex.uvs)
            lines.append(f"{p.x} {p.y} {p.z}")
            lines.append(f"{n.x} {n.y} {n.z}")
            lines.append(" ".join(str(_color_byte(v)) for v in (c.x, c.y, c.z, c.w)))
            lines.append(f"{uv.x} {uv.y}")
            slots = vertex.weights[:4]
            lines.append(" ".join(
                str(slots[i].bone_index if i < len(slots) else 0) for i in range(4)
            ))
            lines.append(" ".join(
                str(slots[i].influence if i < len(slots) else 0.0) for i in range(4)
            ))
        lines.append(str(len(mesh.faces)))
        for face in mesh.faces:
            lines.append("{} {} {}".format(*face.indices))

    return "\n".join(lines) + "\n"


TEXT_EXPORTERS: Dict[str, Callable[[Model], str]] = {
    ".obj": model_to_obj,
    ".smd": model_to_smd,
    ".ascii": model_to_xnalara_ascii,
}


def save_model(model: Model, path: Path, write_vertex_colors: bool = False) -> None:
    """Save *model* in the format implied by the extension of *path*."""
    extension = path.suffix.lower()
    if extension == ".semodel":
        write_semodel(model, path, write_vertex_colors=write_vertex_colors)
        return

    exporter = TEXT_EXPORTERS.get(extension)
    if exporter is None:
        raise ValueError(
            f"Invalid model extension {extension!r} (expected one of {', '.join(SUPPORTED_EXTENSIONS)})"
        )

    text = exporter(model)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    logging.debug("Wrote %s (%d bytes)", path, len(text))
