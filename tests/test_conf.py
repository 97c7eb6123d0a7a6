"""Tests for the conformation model and its flat-vector projection."""

import math

import numpy as np
import pytest
import torch

from dockopt.conf import (
    Change,
    Conf,
    ConfShapeMismatch,
    ConfSize,
    IndexOutOfRange,
    LigandChange,
    LigandConf,
    ResidueConf,
    RigidChange,
    RigidConf,
    angle_to_quaternion,
    check_compatible,
    normalize_angle,
    quaternion_increment,
    quaternion_to_angle,
)

# Two ligands (3 and 0 torsions) and two flexible residues (2 and 1 torsions)
SIZE = ConfSize(ligands=(3, 0), flex=(2, 1))


def _make_conf() -> Conf:
    return Conf(
        ligands=[
            LigandConf(
                rigid=RigidConf(position=[1.0, 2.0, 3.0], orientation=[0.5, 0.5, 0.5, 0.5]),
                torsions=[0.1, 0.2, 0.3],
            ),
            LigandConf(rigid=RigidConf(position=[-1.0, -2.0, -3.0])),
        ],
        flex=[ResidueConf(torsions=[1.1, 1.2]), ResidueConf(torsions=[2.1])],
    )


def _make_change() -> Change:
    change = SIZE.make_change()
    change.set_flat(np.arange(change.num_floats(), dtype=np.float64) / 10.0)
    return change


# ============================================================================
# Flat layout
# ============================================================================

class TestNumFloats:
    def test_conf_counts_four_orientation_components(self):
        conf = _make_conf()
        # (3 + 4 + 3) + (3 + 4 + 0) + 2 + 1
        assert conf.num_floats() == 20
        assert len(conf) == 20

    def test_change_counts_three_orientation_components(self):
        # (3 + 3 + 3) + (3 + 3 + 0) + 2 + 1
        assert SIZE.make_change().num_floats() == 18

    def test_degrees_of_freedom_match_change(self):
        assert SIZE.num_degrees_of_freedom == SIZE.make_change().num_floats()

    def test_num_nodes(self):
        # ligand 0: 1 + 3, ligand 1: 1, residues: 2 + 1
        assert _make_conf().num_nodes() == 8
        assert SIZE.make_change().num_nodes() == 8

    def test_empty(self):
        conf = Conf()
        assert conf.num_floats() == 0
        assert conf.to_flat().shape == (0,)
        with pytest.raises(IndexOutOfRange):
            conf[0]


class TestFlatAccess:
    def test_canonical_order(self):
        flat = _make_conf().to_flat()
        expected = [1.0, 2.0, 3.0, 0.5, 0.5, 0.5, 0.5, 0.1, 0.2, 0.3,
                    -1.0, -2.0, -3.0, 1.0, 0.0, 0.0, 0.0,
                    1.1, 1.2, 2.1]
        np.testing.assert_array_equal(flat, expected)

    def test_getitem_matches_to_flat(self):
        conf = _make_conf()
        flat = conf.to_flat()
        for i in range(conf.num_floats()):
            assert conf[i] == flat[i]

    def test_orientation_reads_raw_quaternion(self):
        conf = _make_conf()
        conf[13] = 0.25
        assert conf.ligands[1].rigid.orientation[0] == 0.25
        conf[16] = -0.75
        assert conf.ligands[1].rigid.orientation[3] == -0.75

    def test_setitem_writes_through(self):
        conf = _make_conf()
        conf[8] = 9.0
        assert conf.ligands[0].torsions[1] == 9.0
        conf[19] = -9.0
        assert conf.flex[1].torsions[0] == -9.0

    def test_change_orientation_is_three_wide(self):
        change = _make_change()
        np.testing.assert_allclose(change.ligands[0].rigid.orientation, [0.3, 0.4, 0.5])
        np.testing.assert_allclose(change.ligands[0].torsions, [0.6, 0.7, 0.8])
        np.testing.assert_allclose(change.flex[1].torsions, [1.7])

    @pytest.mark.parametrize("index", [-1, 20, 100])
    def test_out_of_range(self, index):
        conf = _make_conf()
        with pytest.raises(IndexOutOfRange):
            conf[index]
        with pytest.raises(IndexOutOfRange):
            conf[index] = 0.0
        with pytest.raises(IndexError):
            conf.get_with_node_idx(index)

    def test_change_out_of_range(self):
        change = _make_change()
        with pytest.raises(IndexOutOfRange):
            change.get_with_node_idx(change.num_floats())


class TestNodeIndex:
    # flat index -> node index for the conf shape above
    CONF_NODES = {
        0: 0, 2: 0, 3: 0, 6: 0,      # ligand 0 rigid body
        7: 1, 8: 2, 9: 3,            # ligand 0 torsions
        10: 4, 13: 4, 16: 4,         # ligand 1 rigid body
        17: 5, 18: 6,                # residue 0 torsions
        19: 7,                       # residue 1 torsion
    }
    CHANGE_NODES = {
        0: 0, 5: 0,
        6: 1, 7: 2, 8: 3,
        9: 4, 14: 4,
        15: 5, 16: 6,
        17: 7,
    }

    def test_conf_nodes(self):
        conf = _make_conf()
        flat = conf.to_flat()
        for index, node in self.CONF_NODES.items():
            value, node_idx = conf.get_with_node_idx(index)
            assert node_idx == node, index
            assert value == flat[index]

    def test_change_nodes(self):
        change = _make_change()
        for index, node in self.CHANGE_NODES.items():
            assert change.get_with_node_idx(index)[1] == node, index

    def test_stable_across_queries(self):
        conf = _make_conf()
        first = [conf.get_with_node_idx(i) for i in range(conf.num_floats())]
        second = [conf.get_with_node_idx(i) for i in range(conf.num_floats())]
        assert first == second

    def test_locate(self):
        conf = _make_conf()
        addr = conf.locate(9)
        assert (addr.kind, addr.group, addr.entry, addr.offset, addr.node) == ("torsion", "ligand", 0, 2, 3)
        addr = conf.locate(14)
        assert (addr.kind, addr.entry, addr.offset) == ("orientation", 1, 1)
        addr = conf.locate(18)
        assert (addr.group, addr.entry, addr.offset, addr.node) == ("flex", 0, 1, 6)

    def test_zero_torsion_ligand_is_skipped(self):
        conf = _make_conf()
        # ligand 1 has no torsions: residue 0 starts right after its orientation
        assert conf.locate(17).group == "flex"


# ============================================================================
# Round trip and equality
# ============================================================================

class TestRoundTrip:
    def test_flat_round_trip(self):
        conf = _make_conf()
        rebuilt = SIZE.make_conf()
        rebuilt.set_flat(conf.to_flat())
        assert rebuilt == conf
        np.testing.assert_array_equal(rebuilt.to_flat(), conf.to_flat())

    def test_tensor_round_trip(self):
        conf = _make_conf()
        tensor = conf.to_tensor()
        assert tensor.dtype == torch.float64
        rebuilt = SIZE.make_conf()
        rebuilt.set_flat(tensor)
        assert rebuilt == conf

    def test_elementwise_round_trip(self):
        conf = _make_conf()
        rebuilt = SIZE.make_conf()
        for i in range(conf.num_floats()):
            rebuilt[i] = conf[i]
        assert rebuilt == conf

    def test_set_flat_wrong_length(self):
        with pytest.raises(ConfShapeMismatch):
            _make_conf().set_flat(np.zeros(19))

    def test_copy_is_independent(self):
        conf = _make_conf()
        dup = conf.copy()
        dup[0] = 100.0
        assert conf[0] == 1.0


class TestEquality:
    def test_reflexive_and_symmetric(self):
        a, b = _make_conf(), _make_conf()
        assert a == a
        assert a == b and b == a

    def test_single_scalar_flips_equality(self):
        reference = _make_conf()
        for i in range(reference.num_floats()):
            other = _make_conf()
            other[i] = other[i] + 1.0
            assert other != reference, i
            assert reference != other, i

    def test_change_single_scalar_flips_equality(self):
        reference = _make_change()
        for i in range(reference.num_floats()):
            other = _make_change()
            other[i] = other[i] - 0.5
            assert not other == reference, i

    def test_length_mismatch_is_an_error(self):
        small = ConfSize(ligands=(1,)).make_conf()
        with pytest.raises(ConfShapeMismatch):
            small == _make_conf()

    def test_conf_is_not_a_change(self):
        assert (ConfSize().make_conf() == ConfSize().make_change()) is False


# ============================================================================
# Moving a conf along a change
# ============================================================================

class TestIncrement:
    def test_zero_change_is_identity(self):
        conf = _make_conf()
        expected = conf.to_flat()
        conf.increment(SIZE.make_change(), 1.0)
        np.testing.assert_allclose(conf.to_flat(), expected, atol=1e-12)

    def test_translation_and_torsions(self):
        conf = _make_conf()
        change = SIZE.make_change()
        change.ligands[0].rigid.position[:] = [1.0, 0.0, -1.0]
        change.ligands[0].torsions[:] = [0.5, 0.0, 0.0]
        change.flex[0].torsions[:] = [0.0, 1.0]
        conf.increment(change, 0.5)
        np.testing.assert_allclose(conf.ligands[0].rigid.position, [1.5, 2.0, 2.5])
        assert conf.ligands[0].torsions[0] == pytest.approx(0.35)
        assert conf.flex[0].torsions[1] == pytest.approx(1.7)

    def test_torsions_wrap(self):
        conf = ConfSize(ligands=(1,)).make_conf()
        conf.ligands[0].torsions[0] = math.pi - 0.1
        change = ConfSize(ligands=(1,)).make_change()
        change.ligands[0].torsions[0] = 0.2
        conf.increment(change)
        assert conf.ligands[0].torsions[0] == pytest.approx(-math.pi + 0.1)

    def test_rotation(self):
        conf = ConfSize(ligands=(0,)).make_conf()
        change = ConfSize(ligands=(0,)).make_change()
        change.ligands[0].rigid.orientation[:] = [0.0, 0.0, math.pi / 2]
        conf.increment(change)
        s = math.sqrt(0.5)
        np.testing.assert_allclose(conf.ligands[0].rigid.orientation, [s, 0.0, 0.0, s], atol=1e-12)

    def test_shape_mismatch(self):
        conf = _make_conf()
        with pytest.raises(ConfShapeMismatch):
            conf.increment(ConfSize(ligands=(3, 0), flex=(2,)).make_change())
        with pytest.raises(ConfShapeMismatch):
            conf.increment(ConfSize(ligands=(3, 1), flex=(2, 1)).make_change())
        with pytest.raises(ConfShapeMismatch):
            conf.increment(ConfSize(ligands=(3,), flex=(2, 1)).make_change())


class TestCompatibility:
    def test_matching_shapes(self):
        check_compatible(_make_conf(), _make_change())

    def test_torsion_count_mismatch(self):
        change = Change(
            ligands=[LigandChange(torsions=[0.0, 0.0]), LigandChange()],
            flex=[],
        )
        with pytest.raises(ConfShapeMismatch):
            check_compatible(_make_conf(), change)

    def test_rigid_vectors_are_checked(self):
        with pytest.raises(ConfShapeMismatch):
            RigidConf(orientation=[1.0, 0.0, 0.0])
        with pytest.raises(ConfShapeMismatch):
            RigidChange(orientation=[0.0, 0.0, 0.0, 0.0])


class TestRandomizeAndClear:
    def test_randomize_stays_in_box(self):
        conf = SIZE.make_conf()
        conf.randomize(np.random.default_rng(7), np.zeros(3), np.ones(3) * 2.0)
        for lig in conf.ligands:
            assert np.all(lig.rigid.position >= 0.0) and np.all(lig.rigid.position <= 2.0)
            assert np.linalg.norm(lig.rigid.orientation) == pytest.approx(1.0)
            assert np.all(np.abs(lig.torsions) <= math.pi)

    def test_clear(self):
        change = _make_change()
        change.clear()
        np.testing.assert_array_equal(change.to_flat(), np.zeros(18))


class TestQuaternions:
    def test_angle_round_trip(self):
        v = np.array([0.3, -0.2, 0.9])
        np.testing.assert_allclose(quaternion_to_angle(angle_to_quaternion(v)), v, atol=1e-12)

    def test_identity(self):
        np.testing.assert_array_equal(angle_to_quaternion(np.zeros(3)), [1.0, 0.0, 0.0, 0.0])
        np.testing.assert_array_equal(quaternion_to_angle([1.0, 0.0, 0.0, 0.0]), np.zeros(3))

    def test_increment_composes(self):
        q = quaternion_increment(angle_to_quaternion([0.0, 0.0, 0.4]), [0.0, 0.0, 0.6])
        np.testing.assert_allclose(q, angle_to_quaternion([0.0, 0.0, 1.0]), atol=1e-12)

    def test_normalize_angle(self):
        assert normalize_angle(2.5 * math.pi) == pytest.approx(0.5 * math.pi)
        assert normalize_angle(-1.5 * math.pi) == pytest.approx(0.5 * math.pi)
        assert normalize_angle(0.5) == pytest.approx(0.5)
