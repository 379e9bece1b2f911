#!/usr/bin/env python3
import math
import unittest
from pathlib import Path
import sys
from typing import List, Optional, Sequence, Tuple


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import merge_engine as engine
from model_data import Bone, Face, Material, Mesh, Model, ShapeDelta, Vertex, Weight
from model_math import Quaternion, Vector2, Vector3


def _partial_model(
    name: str,
    bones: Sequence[Tuple[str, int, Vector3]],
    material: str = "skin",
    vertex_position: Vector3 = Vector3(0.0, 0.0, 0.0),
    weight_bone: int = 0,
    shapes: Optional[List[str]] = None,
) -> Model:
    """A partial model with one triangle weighted to *weight_bone*."""
    vertices = [
        Vertex(
            position=vertex_position + Vector3(float(i), 0.0, 0.0),
            normal=Vector3(1.0, 0.0, 0.0),
            uvs=[Vector2(0.5, 0.5)],
            weights=[Weight(weight_bone, 1.0)],
        )
        for i in range(3)
    ]
    return Model(
        name=name,
        bones=[Bone(bone_name, parent_index=parent, local_position=position)
               for bone_name, parent, position in bones],
        meshes=[Mesh(vertices=vertices, faces=[Face((0, 1, 2))], material_indices=[0])],
        materials=[Material(material)],
        shapes=list(shapes or []),
    )


def _body_arm_prop() -> Tuple[Model, Model, Model]:
    body = _partial_model("body", [
        ("root", -1, Vector3(0.0, 0.0, 0.0)),
        ("spine", 0, Vector3(0.0, 0.0, 10.0)),
    ])
    arm = _partial_model("arm", [
        ("spine", -1, Vector3(0.0, 0.0, 0.0)),
        ("hand", 0, Vector3(5.0, 0.0, 0.0)),
    ], vertex_position=Vector3(5.0, 0.0, 0.0), weight_bone=1)
    hand_prop = _partial_model("hand_prop", [
        ("hand", -1, Vector3(0.0, 0.0, 0.0)),
        ("prop", 0, Vector3(0.0, 1.0, 0.0)),
    ], material="metal", vertex_position=Vector3(0.0, 1.0, 0.0), weight_bone=1)
    return body, arm, hand_prop


class RootSelectionTests(unittest.TestCase):
    def test_picks_model_nobody_depends_on(self) -> None:
        body, arm, hand_prop = _body_arm_prop()
        self.assertIs(engine.select_root_model([arm, body, hand_prop]), body)

    def test_defaults_to_first_model(self) -> None:
        a = _partial_model("a", [("x", -1, Vector3()), ("y", 0, Vector3())])
        b = _partial_model("b", [("y", -1, Vector3()), ("x", 0, Vector3())])
        self.assertIs(engine.select_root_model([a, b]), a)

    def test_empty_input_has_no_root(self) -> None:
        with self.assertRaises(engine.MergeError):
            engine.select_root_model([])


class PlanTests(unittest.TestCase):
    def test_dependency_graph(self) -> None:
        body, arm, hand_prop = _body_arm_prop()
        graph = engine.build_dependency_graph([arm, body, hand_prop])
        self.assertEqual(graph, {0: [1], 1: [], 2: [0]})

    def test_model_waits_for_its_attachment(self) -> None:
        body, arm, hand_prop = _body_arm_prop()
        arm.name = "z_arm"
        plan = engine.plan_merge_order([body, hand_prop, arm], body)
        self.assertEqual([m.name for m in plan], ["body", "z_arm", "hand_prop"])

    def test_mutual_dependency_is_reported(self) -> None:
        root = _partial_model("root", [("r", -1, Vector3())])
        first = _partial_model("first", [("p", -1, Vector3()), ("q", 0, Vector3())])
        second = _partial_model("second", [("q", -1, Vector3()), ("p", 0, Vector3())])
        with self.assertRaises(engine.UnresolvableDependencyError) as ctx:
            engine.plan_merge_order([root, first, second], root)
        self.assertIn("first", str(ctx.exception))
        self.assertIn("second", str(ctx.exception))

    def test_mutual_dependency_stops_merge(self) -> None:
        root = _partial_model("root", [("r", -1, Vector3())])
        first = _partial_model("first", [("p", -1, Vector3()), ("q", 0, Vector3())])
        second = _partial_model("second", [("q", -1, Vector3()), ("p", 0, Vector3())])
        with self.assertRaises(engine.MergeError):
            engine.merge_models([root, first, second])


class MergeTests(unittest.TestCase):
    def assertVectorAlmostEqual(self, a: Vector3, b: Vector3, places: int = 5) -> None:
        for got, expected in zip(a, b):
            self.assertAlmostEqual(got, expected, places=places)

    def test_single_model_is_unchanged(self) -> None:
        body, _, _ = _body_arm_prop()
        positions = [v.position for v in body.meshes[0].vertices]
        result = engine.merge_models([body])

        self.assertIs(result.model, body)
        self.assertEqual(result.fold_order, ["body"])
        self.assertEqual([b.name for b in body.bones], ["root", "spine"])
        self.assertEqual(len(body.meshes), 1)
        self.assertEqual([v.position for v in body.meshes[0].vertices], positions)

    def test_self_alignment_is_identity(self) -> None:
        body, _, _ = _body_arm_prop()
        body.generate_global_bone_data()
        alignment = engine.compute_alignment(body, body)
        self.assertEqual(alignment.translation, Vector3(0.0, 0.0, 0.0))
        self.assertEqual(alignment.rotation, Quaternion.identity().to_matrix())

    def test_bone_union_without_duplicates(self) -> None:
        m1 = _partial_model("m1", [("A", -1, Vector3()), ("B", 0, Vector3(1.0, 0.0, 0.0))])
        m2 = _partial_model("m2", [("A", -1, Vector3()), ("C", 0, Vector3(0.0, 1.0, 0.0))], weight_bone=1)
        result = engine.merge_models([m1, m2])
        merged = result.model

        self.assertEqual([b.name for b in merged.bones], ["A", "B", "C"])
        c = merged.find_bone("C")
        self.assertEqual(merged.bones[c.parent_index].name, "A")
        self.assertEqual(merged.meshes[1].vertices[0].weights[0].bone_index, 2)

    def test_three_part_scenario(self) -> None:
        body, arm, hand_prop = _body_arm_prop()
        result = engine.merge_models([arm, body, hand_prop])
        merged = result.model

        self.assertEqual(result.root_name, "body")
        self.assertEqual(result.fold_order, ["body", "arm", "hand_prop"])
        self.assertEqual([b.name for b in merged.bones], ["root", "spine", "hand", "prop"])
        self.assertEqual([b.parent_index for b in merged.bones], [-1, 0, 1, 2])
        self.assertEqual(len(merged.meshes), 3)

        merged.generate_global_bone_data()
        self.assertVectorAlmostEqual(merged.bones[2].global_position, Vector3(5.0, 0.0, 10.0))
        self.assertVectorAlmostEqual(merged.bones[3].global_position, Vector3(5.0, 1.0, 10.0))

        # arm geometry moved by spine offset, prop geometry by hand offset
        self.assertVectorAlmostEqual(merged.meshes[1].vertices[0].position, Vector3(5.0, 0.0, 10.0))
        self.assertVectorAlmostEqual(merged.meshes[2].vertices[0].position, Vector3(5.0, 1.0, 10.0))

        self.assertEqual(merged.meshes[1].vertices[0].weights[0].bone_index, 2)
        self.assertEqual(merged.meshes[2].vertices[0].weights[0].bone_index, 3)
        self.assertEqual([m.name for m in merged.materials], ["skin", "metal"])
        self.assertEqual(merged.meshes[2].material_indices, [1])
        self.assertEqual(merged.meshes[1].material_indices, [0])

    def test_rotation_alignment(self) -> None:
        turn = Quaternion.from_axis_angle(Vector3(0.0, 0.0, 1.0), math.pi / 2)
        base = Model(name="base", bones=[
            Bone("A", local_position=Vector3(1.0, 2.0, 3.0), local_rotation=turn),
        ])
        part = _partial_model("part", [("A", -1, Vector3())], shapes=["smile"])
        part.meshes[0].vertices[0].shapes = [ShapeDelta(0, Vector3(1.0, 0.0, 0.0))]

        engine.fold_model(base, part)
        vertices = base.meshes[0].vertices
        self.assertVectorAlmostEqual(vertices[0].position, Vector3(1.0, 2.0, 3.0))
        self.assertVectorAlmostEqual(vertices[1].position, Vector3(1.0, 3.0, 3.0))
        vertex = vertices[0]
        self.assertVectorAlmostEqual(vertex.normal, Vector3(0.0, 1.0, 0.0))
        self.assertVectorAlmostEqual(vertex.shapes[0].delta, Vector3(0.0, 1.0, 0.0))
        self.assertEqual(vertex.uvs, [Vector2(0.5, 0.5)])

    def test_alignment_uses_bone_zero_of_unsorted_model(self) -> None:
        turn = Quaternion.from_axis_angle(Vector3(0.0, 0.0, 1.0), math.pi / 2)
        base = Model(name="base", bones=[
            Bone("A"),
            Bone("B", parent_index=0, local_position=Vector3(10.0, 0.0, 0.0), local_rotation=turn),
        ])
        # attaches through B, which is listed before its parent
        part = _partial_model("part", [
            ("B", 1, Vector3(10.0, 0.0, 0.0)),
            ("A", -1, Vector3()),
        ], vertex_position=Vector3(11.0, 0.0, 0.0))

        engine.fold_model(base, part)
        vertex = base.meshes[0].vertices[0]
        self.assertVectorAlmostEqual(vertex.position, Vector3(0.0, 11.0, 0.0))
        self.assertEqual(base.bones[vertex.weights[0].bone_index].name, "B")

    def test_negative_weight_index_is_rejected(self) -> None:
        base = _partial_model("base", [("A", -1, Vector3())])
        part = _partial_model("part", [("A", -1, Vector3()), ("C", 0, Vector3())])
        part.meshes[0].vertices[0].weights = [Weight(-1, 1.0)]
        with self.assertRaises(engine.MergeError) as ctx:
            engine.fold_model(base, part)
        self.assertIn("part", str(ctx.exception))
        self.assertIn("-1", str(ctx.exception))

    def test_out_of_range_shape_index_is_rejected(self) -> None:
        base = _partial_model("base", [("A", -1, Vector3())])
        part = _partial_model("part", [("A", -1, Vector3())], shapes=["smile"])
        part.meshes[0].vertices[0].shapes = [ShapeDelta(3, Vector3(0.0, 0.0, 1.0))]
        with self.assertRaises(engine.MergeError):
            engine.fold_model(base, part)

    def test_folded_materials_are_copies(self) -> None:
        base = _partial_model("base", [("A", -1, Vector3())], material="skin")
        part = _partial_model("part", [("A", -1, Vector3())], material="metal")
        part.materials[0].images["DiffuseMap"] = "metal_c.png"

        engine.fold_model(base, part)
        merged = base.materials[1]
        self.assertIsNot(merged, part.materials[0])
        self.assertEqual(merged.name, "metal")
        self.assertEqual(merged.get_image("DiffuseMap"), "metal_c.png")
        part.materials[0].images["DiffuseMap"] = "other.png"
        self.assertEqual(merged.get_image("DiffuseMap"), "metal_c.png")

    def test_fold_sorts_the_folded_model(self) -> None:
        base = _partial_model("base", [("A", -1, Vector3())])
        part = _partial_model("part", [
            ("A", -1, Vector3()),
            ("tip", 2, Vector3()),
            ("mid", 0, Vector3()),
        ], weight_bone=1)
        engine.fold_model(base, part)
        self.assertEqual([b.name for b in part.bones], ["A", "mid", "tip"])
        self.assertEqual(part.bones[part.meshes[0].vertices[0].weights[0].bone_index].name, "tip")

    def test_folded_faces_are_copied(self) -> None:
        body, arm, _ = _body_arm_prop()
        engine.merge_models([arm, body])
        self.assertEqual(body.meshes[1].faces[0].indices, (0, 1, 2))
        self.assertIsNot(body.meshes[1].faces, arm.meshes[0].faces)

    def test_unsorted_partial_model(self) -> None:
        base = _partial_model("base", [("A", -1, Vector3())])
        part = _partial_model("part", [
            ("A", -1, Vector3()),
            ("tip", 2, Vector3(0.0, 0.0, 1.0)),
            ("mid", 0, Vector3(0.0, 0.0, 2.0)),
        ], weight_bone=1)
        engine.merge_models([base, part])

        self.assertEqual([b.name for b in base.bones], ["A", "mid", "tip"])
        self.assertEqual([b.parent_index for b in base.bones], [-1, 0, 1])
        tip = base.meshes[1].vertices[0].weights[0].bone_index
        self.assertEqual(base.bones[tip].name, "tip")


class ShapeKeyPolicyTests(unittest.TestCase):
    def _models(self) -> Tuple[Model, Model]:
        root = _partial_model("root", [("A", -1, Vector3())], shapes=["smile"])
        other = _partial_model("other", [("A", -1, Vector3())], shapes=["smile", "blink"])
        other.meshes[0].vertices[0].shapes = [
            ShapeDelta(0, Vector3(0.0, 0.0, 1.0)),
            ShapeDelta(1, Vector3(0.0, 1.0, 0.0)),
        ]
        return root, other

    def test_merge_by_name(self) -> None:
        root, other = self._models()
        merged = engine.merge_models([root, other], shape_policy=engine.ShapeKeyPolicy.MERGE_BY_NAME).model
        self.assertEqual(merged.shapes, ["smile", "blink"])
        self.assertEqual([s.shape_index for s in merged.meshes[1].vertices[0].shapes], [0, 1])

    def test_keep_distinct(self) -> None:
        root, other = self._models()
        merged = engine.merge_models([root, other], shape_policy=engine.ShapeKeyPolicy.KEEP_DISTINCT).model
        self.assertEqual(merged.shapes, ["smile", "smile", "blink"])
        self.assertEqual([s.shape_index for s in merged.meshes[1].vertices[0].shapes], [1, 2])


class BonelessModelTests(unittest.TestCase):
    def test_boneless_model_folds_without_alignment(self) -> None:
        base = _partial_model("base", [("A", -1, Vector3(1.0, 1.0, 1.0))])
        loose = _partial_model("loose", [], vertex_position=Vector3(2.0, 0.0, 0.0))
        for vertex in loose.meshes[0].vertices:
            vertex.weights = []

        result = engine.merge_models([base, loose])
        self.assertEqual(result.fold_order, ["base", "loose"])
        self.assertEqual(result.model.meshes[1].vertices[0].position, Vector3(2.0, 0.0, 0.0))


if __name__ == "__main__":
    unittest.main()
