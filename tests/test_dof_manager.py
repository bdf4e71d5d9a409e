"""
H1 空间与自由度编号测试
"""

import numpy as np
import pytest

from core import InvalidStateError
from finite_elements import (
    H1Space, ExactSolution, Solution, rectangle_mesh, square_mesh, project_global, h1_error,
)


def two_quads():
    return rectangle_mesh(2, 1, 0.0, 2.0, 0.0, 1.0)


def wave(x, y):
    return (np.sin(3 * x) * np.cos(2 * y), 3 * np.cos(3 * x) * np.cos(2 * y),
            -2 * np.sin(3 * x) * np.sin(2 * y))


class TestDofCounts:
    """自由度个数测试"""

    @pytest.mark.parametrize("element_type, order, expected", [
        ('quad', 1, 4), ('quad', 2, 9), ('quad', 3, 16),
        ('triangle', 1, 4), ('triangle', 2, 9), ('triangle', 3, 16),
    ])
    def test_single_square(self, element_type, order, expected):
        space = H1Space(square_mesh(1, element_type), order)
        assert space.assign_dofs() == expected
        assert space.get_num_dofs() == expected

    def test_anisotropic_order(self):
        space = H1Space(square_mesh(1), (2, 3))
        assert space.assign_dofs() == 12
        assert space.get_element_order(0) == (2, 3)

    def test_essential_boundary(self):
        space = H1Space(square_mesh(2), 1, essential_markers=(1, 2, 3, 4))
        assert space.assign_dofs() == 1
        space.set_uniform_order(2)
        assert space.assign_dofs() == 9

    def test_partial_essential_boundary(self):
        # 只有下边固定：3x3 个顶点去掉下边的 3 个
        space = H1Space(square_mesh(2), 1, essential_markers=(1,))
        assert space.assign_dofs() == 6

    def test_hanging_vertex_p1(self):
        """一个悬挂顶点：11 个顶点中 10 个有自由度"""
        mesh = two_quads()
        mesh.refine_element(0)
        space = H1Space(mesh, 1)
        assert space.assign_dofs() == 10

    def test_hanging_vertex_p2(self):
        mesh = two_quads()
        mesh.refine_element(0)
        space = H1Space(mesh, 2)
        assert space.assign_dofs() == 29

    def test_regular_mesh_after_forcing(self):
        mesh = two_quads()
        mesh.refine_element(0)
        mesh.enforce_regularity(0)
        space = H1Space(mesh, 1)
        assert space.assign_dofs() == 12

    def test_refined_square(self):
        mesh = square_mesh(1)
        mesh.refine_element(0)
        space = H1Space(mesh, 1)
        assert space.assign_dofs() == 9
        assert space.get_element_dofs(0) == []
        with pytest.raises(InvalidStateError, match="未激活"):
            space.get_assembly_list(0)
        assert len(space.get_element_dofs(1)) == 4

    def test_first_dof_offset(self):
        space = H1Space(square_mesh(1), 1)
        assert space.assign_dofs(first_dof=10) == 4
        assert sorted(space.get_element_dofs(0)) == [10, 11, 12, 13]


class TestDofState:
    """编号状态与阶数管理测试"""

    def test_idempotent(self):
        mesh = two_quads()
        mesh.refine_element(0)
        space = H1Space(mesh, 3)
        n1 = space.assign_dofs()
        dofs1 = {e.id: space.get_element_dofs(e.id) for e in mesh.active_elements()}
        n2 = space.assign_dofs()
        dofs2 = {e.id: space.get_element_dofs(e.id) for e in mesh.active_elements()}
        assert n1 == n2
        assert dofs1 == dofs2

    def test_not_assigned(self):
        space = H1Space(square_mesh(1), 1)
        assert not space.is_assigned()
        with pytest.raises(InvalidStateError):
            space.get_num_dofs()

    def test_stale_after_refinement(self):
        mesh = square_mesh(1)
        space = H1Space(mesh, 1)
        space.assign_dofs()
        mesh.refine_element(0)
        assert not space.is_assigned()
        with pytest.raises(InvalidStateError, match="重新编号"):
            space.get_num_dofs()
        space.assign_dofs()
        assert space.get_num_dofs() == 9

    def test_stale_after_order_change(self):
        space = H1Space(square_mesh(1), 1)
        space.assign_dofs()
        space.set_element_order(0, 2)
        with pytest.raises(InvalidStateError):
            space.get_element_dofs(0)

    def test_invalid_orders(self):
        with pytest.raises(ValueError):
            H1Space(square_mesh(1), 0)
        with pytest.raises(ValueError):
            H1Space(square_mesh(1), 11)
        space = H1Space(square_mesh(1, 'triangle'), 2)
        with pytest.raises(ValueError, match="各向异性"):
            space.set_element_order(0, (2, 3))

    def test_order_inherited_by_sons(self):
        mesh = square_mesh(1)
        space = H1Space(mesh, 1)
        space.set_element_order(0, 3)
        sons = mesh.refine_element(0)
        assert all(space.get_element_order(s) == (3, 3) for s in sons)

    def test_minimum_rule(self):
        """公共边取两侧阶数的最小值"""
        mesh = two_quads()
        space = H1Space(mesh, 1)
        space.set_element_order(0, 3)
        space.assign_dofs()
        assert space.get_edge_order(1, 4) == 1
        assert space.get_edge_order(0, 1) == 3
        # 顶点 6，左单元三条 3 阶边各 2 个，泡函数 4 个
        assert space.get_num_dofs() == 6 + 3 * 2 + 4

    def test_dup_and_copy_orders(self):
        mesh = square_mesh(2)
        space = H1Space(mesh, 2, essential_markers=(1,))
        space.set_element_order(3, 4)
        ref_mesh = mesh.copy()
        ref_mesh.refine_all_elements()
        ref = space.dup(ref_mesh)
        assert ref.essential_markers == space.essential_markers
        ref.copy_orders(space, 1)
        for son in ref_mesh.get_element(3).sons:
            assert ref.get_element_order(son) == (5, 5)
        for son in ref_mesh.get_element(0).sons:
            assert ref.get_element_order(son) == (3, 3)

    def test_copy_orders_requires_same_base(self):
        space = H1Space(square_mesh(1), 1)
        other = H1Space(square_mesh(2), 1)
        with pytest.raises(ValueError):
            other.copy_orders(space)

    def test_copy_orders_requires_same_geometry(self):
        """初始单元个数相同但几何不同的网格也被拒绝"""
        space = H1Space(square_mesh(2), 1)
        other = H1Space(rectangle_mesh(2, 2, 0.0, 2.0, 0.0, 2.0), 1)
        with pytest.raises(ValueError, match="同一初始网格"):
            other.copy_orders(space)
        same = H1Space(square_mesh(2), 1)
        same.copy_orders(space, 1)
        assert same.get_element_order(0) == (2, 2)


class TestConstraints:
    """悬挂节点约束测试"""

    @pytest.mark.parametrize("order", [1, 2, 3])
    def test_continuity_across_hanging_edge(self, order):
        """x = 1 的公共边上左右两侧的值相同"""
        mesh = two_quads()
        mesh.refine_element(0)
        mesh.refine_element(mesh.get_element(0).sons[1])
        space = H1Space(mesh, order)
        space.assign_dofs()
        sln = project_global([space], [ExactSolution(mesh, wave, order=8)])[0]
        y = np.linspace(0.02, 0.98, 11)
        left = sln.values_at(0, np.column_stack([np.ones_like(y), 2 * y - 1]))
        right = sln.values_at(1, np.column_stack([-np.ones_like(y), 2 * y - 1]))
        np.testing.assert_allclose(left.val, right.val, atol=1e-12)

    def test_hanging_value_is_average(self):
        """p=1 时悬挂顶点的值等于粗边两端的平均值"""
        mesh = two_quads()
        mesh.refine_element(0)
        space = H1Space(mesh, 1)
        space.assign_dofs()
        sln = Solution(space, np.arange(1.0, 11.0))
        ends = sln.values_at(1, np.array([[-1.0, -1.0], [-1.0, 1.0]])).val
        mid = sln.values_at(0, np.array([[1.0, 0.0]])).val
        assert mid[0] == pytest.approx(ends.mean())

    @pytest.mark.parametrize("order", [2, 3])
    def test_polynomial_reproduced(self, order):
        """多层悬挂节点下 Q2 函数被精确投影"""
        mesh = two_quads()
        mesh.refine_element(0)
        mesh.refine_element(mesh.get_element(0).sons[1])
        mesh.refine_element(1, 1)
        space = H1Space(mesh, order)
        space.assign_dofs()
        fn = lambda x, y: (x * x * y - y * y, 2 * x * y, x * x - 2 * y)
        exact = ExactSolution(mesh, fn, order=6)
        sln = project_global([space], [exact])[0]
        assert h1_error(sln, exact) < 1e-8

    def test_solution_snapshot(self):
        """解记录创建时的叶单元，网格继续细化后仍可求值"""
        mesh = square_mesh(1)
        space = H1Space(mesh, 2)
        space.assign_dofs()
        fn = lambda x, y: (x * y, y, x)
        sln = project_global([space], [ExactSolution(mesh, fn)])[0]
        mesh.refine_element(0)
        assert sln.leaves == frozenset({0})
        val = sln.values_at(0, np.array([[0.0, 0.0]])).val
        assert val[0] == pytest.approx(0.25)

    def test_solution_size_check(self):
        space = H1Space(square_mesh(1), 1)
        space.assign_dofs()
        with pytest.raises(ValueError):
            Solution(space, np.zeros(3))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
