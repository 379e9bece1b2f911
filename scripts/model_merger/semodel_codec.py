#!/usr/bin/env python3
"""
semodel_codec.py
================

Reader and writer for SEModel binary files (version 1, minor 0x14), including
the trailing shape-key ("SEBlend") extension block.

Layout (all integers little-endian, floats single precision):

  header     "SEModel" u16 version u16 minor, 3 presence bytes,
             i32 bone/mesh/material counts, 3 reserved bytes
  bones      null-terminated names, then per bone: u8 flags, i32 parent,
             global pos/rot, local pos/rot, scale (as flagged)
  meshes     u8 flags, u8 material slots, u8 weight slots, i32 vertex count,
             i32 face count, then positions, uvs, normals, colors, weights,
             faces and per-slot material indices as contiguous blocks
  materials  name, bool simple, diffuse/normal/specular paths
  shapes     u64 magic, i64 name count, names, then per mesh per vertex
             i32 delta count + (i32 index, 3 floats) records

Weight bone indices use 8/16/32-bit fields depending on the total bone count
and face indices depend on the mesh vertex count. The shape block always uses
32-bit fields.
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import List, Tuple

from model_data import (
    DIFFUSE_MAP,
    NORMAL_MAP,
    SPECULAR_MAP,
    Bone,
    Face,
    Material,
    Mesh,
    Model,
    ShapeDelta,
    Vertex,
    Weight,
)
from model_math import Quaternion, Vector2, Vector3, Vector4


class SEModelFormatError(Exception):
    pass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SEMODEL_MAGIC = b"SEModel"
SEMODEL_VERSION = 0x1
SEMODEL_MINOR = 0x14
SEMODEL_HEADER_SIZE = 7 + 2 + 2 + 3 + 12 + 3

# Data presence
PRESENCE_BONES = 0x1
PRESENCE_MESHES = 0x2
PRESENCE_MATERIALS = 0x4

# Bone data presence
BONE_GLOBAL_MATRICES = 0x1
BONE_LOCAL_MATRICES = 0x2
BONE_SCALES = 0x4

# Mesh data presence
MESH_UVS = 0x1
MESH_NORMALS = 0x2
MESH_COLORS = 0x4
MESH_WEIGHTS = 0x8

DATA_PRESENCE_ALL = PRESENCE_BONES | PRESENCE_MESHES | PRESENCE_MATERIALS
BONE_PRESENCE_ALL = BONE_GLOBAL_MATRICES | BONE_LOCAL_MATRICES | BONE_SCALES
MESH_PRESENCE_ALL = MESH_UVS | MESH_NORMALS | MESH_COLORS | MESH_WEIGHTS

# "SEBlend\n" read as a little-endian u64
SHAPE_BLOCK_MAGIC = 0x0A646E656C424553

VERTEX_COLOR_PLACEHOLDER = 0xFFFFFFFF


def index_format(count: int) -> str:
    """Struct code for an index into a table of *count* entries."""
    if count <= 0xFF:
        return "B"
    if count <= 0xFFFF:
        return "H"
    return "I"


def _c_string(text: str) -> bytes:
    return text.encode("utf-8") + b"\x00"


def _color_to_rgba(color: Vector4) -> bytes:
    return bytes(
        max(0, min(255, int(round(channel * 255.0))))
        for channel in (color.x, color.y, color.z, color.w)
    )


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

def _encode_mesh(mesh: Mesh, bone_count: int, write_vertex_colors: bool) -> bytes:
    vertices = mesh.vertices

    # Several UV layers may share one material, so the slot count covers both.
    material_count = len(mesh.material_indices)
    weight_count = 0
    for vertex in vertices:
        weight_count = max(weight_count, len(vertex.weights))
        material_count = max(material_count, len(vertex.uvs))

    if material_count > 0xFF or weight_count > 0xFF:
        raise SEModelFormatError(
            f"Mesh exceeds SEModel slot limits (materials={material_count}, weights={weight_count})"
        )

    out = bytearray()
    out += struct.pack("<BBBii", 0, material_count, weight_count, len(vertices), len(mesh.faces))

    for vertex in vertices:
        out += struct.pack("<3f", *vertex.position)

    for vertex in vertices:
        for slot in range(material_count):
            if vertex.uvs:
                uv = vertex.uvs[slot if slot < len(vertex.uvs) else len(vertex.uvs) - 1]
            else:
                uv = Vector2(0.0, 0.0)
            out += struct.pack("<2f", uv.x, uv.y)

    for vertex in vertices:
        out += struct.pack("<3f", *vertex.normal)

    for vertex in vertices:
        if write_vertex_colors:
            out += _color_to_rgba(vertex.color)
        else:
            out += struct.pack("<I", VERTEX_COLOR_PLACEHOLDER)

    weight_record = struct.Struct("<" + index_format(bone_count) + "f")
    for vertex in vertices:
        for slot in range(weight_count):
            if slot < len(vertex.weights):
                weight = vertex.weights[slot]
                out += weight_record.pack(weight.bone_index, weight.influence)
            else:
                out += weight_record.pack(0, 0.0)

    face_record = struct.Struct("<3" + index_format(len(vertices)))
    for face in mesh.faces:
        out += face_record.pack(*face.indices)

    for slot in range(material_count):
        if slot < len(mesh.material_indices):
            out += struct.pack("<i", mesh.material_indices[slot])
        elif mesh.material_indices:
            out += struct.pack("<i", mesh.material_indices[-1])
        else:
            out += struct.pack("<i", -1)

    return bytes(out)


def encode_semodel(model: Model, write_vertex_colors: bool = False) -> bytes:
    """Serialize *model* to SEModel bytes.

    The 4-byte vertex color slot holds a constant placeholder unless
    *write_vertex_colors* is set, in which case RGBA bytes are written.
    """
    out = bytearray()
    out += SEMODEL_MAGIC
    out += struct.pack("<HH", SEMODEL_VERSION, SEMODEL_MINOR)
    out += struct.pack("<BBB", DATA_PRESENCE_ALL, BONE_PRESENCE_ALL, MESH_PRESENCE_ALL)
    out += struct.pack("<iii", len(model.bones), len(model.meshes), len(model.materials))
    out += b"\x00\x00\x00"

    for bone in model.bones:
        out += _c_string(bone.name)

    for bone in model.bones:
        out += struct.pack("<Bi", 0, bone.parent_index)
        out += struct.pack("<3f", *bone.global_position)
        out += struct.pack("<4f", *bone.global_rotation)
        out += struct.pack("<3f", *bone.local_position)
        out += struct.pack("<4f", *bone.local_rotation)
        out += struct.pack("<3f", *bone.scale)

    bone_count = len(model.bones)
    for index, mesh in enumerate(model.meshes):
        try:
            out += _encode_mesh(mesh, bone_count, write_vertex_colors)
        except struct.error as exc:
            # index outside the width chosen for the bone or vertex table
            raise SEModelFormatError(f"Mesh {index} of {model.name} cannot be encoded: {exc}") from exc

    for material in model.materials:
        out += _c_string(material.name)
        out += struct.pack("<?", True)
        out += _c_string(material.get_image(DIFFUSE_MAP))
        out += _c_string(material.get_image(NORMAL_MAP))
        out += _c_string(material.get_image(SPECULAR_MAP))

    out += struct.pack("<Qq", SHAPE_BLOCK_MAGIC, len(model.shapes))
    for shape in model.shapes:
        out += _c_string(shape)

    for mesh in model.meshes:
        for vertex in mesh.vertices:
            out += struct.pack("<i", len(vertex.shapes))
            for shape in vertex.shapes:
                out += struct.pack("<i3f", shape.shape_index, *shape.delta)

    return bytes(out)


def write_semodel(model: Model, path: Path, write_vertex_colors: bool = False) -> None:
    """Encode *model* and write it to *path* in one go."""
    data = encode_semodel(model, write_vertex_colors=write_vertex_colors)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logging.debug("Wrote %s (%d bytes)", path, len(data))


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

class _Cursor:
    """Bounds-checked sequential reader over a bytes buffer."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def unpack(self, fmt: str, what: str) -> Tuple:
        size = struct.calcsize(fmt)
        if self.pos + size > len(self.data):
            raise SEModelFormatError(f"{what} truncated at offset {self.pos}")
        values = struct.unpack_from(fmt, self.data, self.pos)
        self.pos += size
        return values

    def c_string(self, what: str) -> str:
        end = self.data.find(b"\x00", self.pos)
        if end < 0:
            raise SEModelFormatError(f"{what} string not terminated (offset {self.pos})")
        raw = self.data[self.pos:end]
        self.pos = end + 1
        return raw.decode("utf-8", errors="replace")


def _decode_mesh(cursor: _Cursor, index: int, mesh_flags: int, bone_count: int) -> Mesh:
    what = f"Mesh {index}"
    _flags, material_count, weight_count, vertex_count, face_count = cursor.unpack("<BBBii", what)
    if vertex_count < 0 or face_count < 0:
        raise SEModelFormatError(f"{what} has negative counts ({vertex_count}, {face_count})")

    vertices = [Vertex() for _ in range(vertex_count)]

    for vertex in vertices:
        vertex.position = Vector3(*cursor.unpack("<3f", f"{what} positions"))

    if mesh_flags & MESH_UVS:
        for vertex in vertices:
            for _ in range(material_count):
                vertex.uvs.append(Vector2(*cursor.unpack("<2f", f"{what} uvs")))

    if mesh_flags & MESH_NORMALS:
        for vertex in vertices:
            vertex.normal = Vector3(*cursor.unpack("<3f", f"{what} normals"))

    if mesh_flags & MESH_COLORS:
        for vertex in vertices:
            r, g, b, a = cursor.unpack("<4B", f"{what} colors")
            vertex.color = Vector4(r / 255.0, g / 255.0, b / 255.0, a / 255.0)

    if mesh_flags & MESH_WEIGHTS:
        weight_fmt = "<" + index_format(bone_count) + "f"
        for vertex in vertices:
            for _ in range(weight_count):
                bone_index, influence = cursor.unpack(weight_fmt, f"{what} weights")
                vertex.weights.append(Weight(bone_index, influence))

    face_fmt = "<3" + index_format(vertex_count)
    faces = [Face(cursor.unpack(face_fmt, f"{what} faces")) for _ in range(face_count)]

    material_indices = [
        cursor.unpack("<i", f"{what} material indices")[0] for _ in range(material_count)
    ]

    return Mesh(vertices=vertices, faces=faces, material_indices=material_indices)


def _decode_shape_block(cursor: _Cursor, model: Model) -> None:
    if cursor.remaining() < 16:
        return
    magic, = struct.unpack_from("<Q", cursor.data, cursor.pos)
    if magic != SHAPE_BLOCK_MAGIC:
        logging.debug("Ignoring %d trailing bytes in %s", cursor.remaining(), model.name)
        return
    cursor.pos += 8

    shape_count, = cursor.unpack("<q", "Shape header")
    if shape_count < 0:
        raise SEModelFormatError(f"Invalid shape count: {shape_count}")
    model.shapes = [cursor.c_string("Shape name") for _ in range(shape_count)]

    for mesh in model.meshes:
        for vertex in mesh.vertices:
            delta_count, = cursor.unpack("<i", "Shape deltas")
            for _ in range(delta_count):
                shape_index, dx, dy, dz = cursor.unpack("<i3f", "Shape deltas")
                vertex.shapes.append(ShapeDelta(shape_index, Vector3(dx, dy, dz)))


def decode_semodel(data: bytes, name: str = "") -> Model:
    """Parse SEModel bytes into a Model."""
    if len(data) < SEMODEL_HEADER_SIZE:
        raise SEModelFormatError(f"File too small: {len(data)} bytes")
    if data[:7] != SEMODEL_MAGIC:
        raise SEModelFormatError(f"Not an SEModel file (magic: {data[:7]!r})")

    cursor = _Cursor(data)
    cursor.pos = 7
    version, _minor = cursor.unpack("<HH", "Header")
    if version != SEMODEL_VERSION:
        raise SEModelFormatError(f"Unsupported SEModel version: {version}")

    data_flags, bone_flags, mesh_flags = cursor.unpack("<BBB", "Header")
    bone_count, mesh_count, material_count = cursor.unpack("<iii", "Header")
    cursor.pos += 3

    if bone_count < 0 or mesh_count < 0 or material_count < 0:
        raise SEModelFormatError(
            f"Invalid counts (bones={bone_count}, meshes={mesh_count}, materials={material_count})"
        )

    model = Model(name=name)

    if data_flags & PRESENCE_BONES:
        names: List[str] = [cursor.c_string("Bone name") for _ in range(bone_count)]
        for bone_name in names:
            _flags, parent = cursor.unpack("<Bi", f"Bone {bone_name!r}")
            bone = Bone(name=bone_name, parent_index=parent)
            if bone_flags & BONE_GLOBAL_MATRICES:
                bone.global_position = Vector3(*cursor.unpack("<3f", f"Bone {bone_name!r}"))
                bone.global_rotation = Quaternion(*cursor.unpack("<4f", f"Bone {bone_name!r}"))
            if bone_flags & BONE_LOCAL_MATRICES:
                bone.local_position = Vector3(*cursor.unpack("<3f", f"Bone {bone_name!r}"))
                bone.local_rotation = Quaternion(*cursor.unpack("<4f", f"Bone {bone_name!r}"))
            if bone_flags & BONE_SCALES:
                bone.scale = Vector3(*cursor.unpack("<3f", f"Bone {bone_name!r}"))
            model.bones.append(bone)

    if data_flags & PRESENCE_MESHES:
        for index in range(mesh_count):
            model.meshes.append(_decode_mesh(cursor, index, mesh_flags, bone_count))

    if data_flags & PRESENCE_MATERIALS:
        for _ in range(material_count):
            material = Material(name=cursor.c_string("Material name"))
            is_simple, = cursor.unpack("<?", f"Material {material.name!r}")
            if is_simple:
                for key in (DIFFUSE_MAP, NORMAL_MAP, SPECULAR_MAP):
                    path = cursor.c_string(f"Material {material.name!r}")
                    if path:
                        material.images[key] = path
            model.materials.append(material)

    _decode_shape_block(cursor, model)
    return model


def read_semodel(path: Path) -> Model:
    """Read an SEModel file; the model is named after the file stem."""
    return decode_semodel(path.read_bytes(), name=path.stem)
