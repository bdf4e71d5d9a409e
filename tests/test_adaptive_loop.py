"""
hp 自适应循环测试
"""

import numpy as np
import pytest

from adaptivity import (
    AdaptivityLoop, CandList, H1ProjBasedSelector, IterationRecord, LoopState, RefinementStrategy, StrategyKind,
    adapt_to_exact_function,
)
from core import AdaptivityConfig
from finite_elements import (
    H1Space, ExactSolution, WeakForm, int_F_v, laplace_form, l2_form, square_mesh, l_shape_mesh,
)


def bubble(x, y):
    return (x * (1 - x) * y * (1 - y), (1 - 2 * x) * y * (1 - y), x * (1 - x) * (1 - 2 * y))


def bubble_rhs(x, y):
    return 2 * y * (1 - y) + 2 * x * (1 - x)


def poisson_form(rhs, neq=1):
    wf = WeakForm(neq)
    for i in range(neq):
        wf.add_matrix_form(i, i, laplace_form)
        wf.add_vector_form(i, lambda wt, v, geom, ext: int_F_v(wt, rhs, v, geom))
    return wf


def unit_rhs(x, y):
    return np.ones_like(x)


class TestStoppingCriteria:
    """停止准则测试"""

    def test_converged(self):
        """解属于初始空间时第一次迭代即收敛"""
        mesh = square_mesh(2)
        config = AdaptivityConfig(p_init=2, err_stop=1e-3)
        loop = AdaptivityLoop.from_mesh(mesh, poisson_form(bubble_rhs), config,
                                        essential_markers=(1, 2, 3, 4),
                                        exact=ExactSolution(mesh, bubble))
        result = loop.run()
        assert result.reason == 'converged'
        assert result.converged
        assert len(result.records) == 1
        assert result.records[0].err_exact < 1e-3
        assert loop.state == LoopState.DONE

    def test_ndof_limit(self):
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, ndof_stop=1)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs), config,
                                        essential_markers=(1, 2, 3, 4))
        result = loop.run()
        assert result.reason == 'ndof_limit'
        assert result.records[-1].ndof >= 1

    def test_max_iterations(self):
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, cand_list='H_ISO', max_iterations=3)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs), config,
                                        essential_markers=(1, 2, 3, 4))
        result = loop.run()
        assert result.reason == 'max_iterations'
        assert [r.iteration for r in result.records] == [1, 2, 3]

    def test_no_refinement(self):
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, strategy=2, threshold=1e10)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs), config,
                                        essential_markers=(1, 2, 3, 4))
        result = loop.run()
        assert result.reason == 'no_refinement'
        assert len(result.records) == 1
        assert result.records[0].n_refined == 0


class TestLoopBehaviour:
    """自适应过程测试"""

    def test_h_adaptivity_reduces_error(self):
        """h 细化：自由度单调不减，误差下降"""
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, cand_list='H_ISO', threshold=0.3,
                                  ndof_stop=5000, max_iterations=4)
        loop = AdaptivityLoop.from_mesh(l_shape_mesh(), poisson_form(unit_rhs), config,
                                        essential_markers=(1, 2, 3, 4, 5))
        result = loop.run()
        ndofs = [r.ndof for r in result.records]
        assert ndofs == sorted(ndofs)
        assert ndofs[-1] > ndofs[0]
        assert result.records[-1].err_est < result.records[0].err_est
        assert all(r.ref_ndof > r.ndof for r in result.records)

    def test_hp_adaptivity_with_exact_error(self):
        mesh = square_mesh(1)
        config = AdaptivityConfig(p_init=1, init_ref_num=1, err_stop=1e-6, cand_list='HP_ANISO',
                                  max_iterations=3)
        exact = ExactSolution(mesh, bubble)
        loop = AdaptivityLoop.from_mesh(mesh, poisson_form(bubble_rhs), config,
                                        essential_markers=(1, 2, 3, 4), exact=exact)
        result = loop.run()
        assert result.records[0].err_exact > result.records[-1].err_exact
        # 初始网格不被循环修改
        assert mesh.get_num_active_elements() == 1

    def test_callbacks(self):
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, cand_list='H_ISO', max_iterations=3)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs), config,
                                        essential_markers=(1, 2, 3, 4))
        steps, refinements = [], []
        loop.add_callback('step_completed', steps.append)
        loop.add_callback('refinement_done', refinements.append)
        extra = []
        loop.add_callback('step_completed', extra.append)
        loop.remove_callback('step_completed', extra.append)
        with pytest.warns(UserWarning):
            loop.add_callback('unknown_event', print)
        loop.run()
        assert len(steps) == 3
        assert all(isinstance(r, IterationRecord) for r in steps)
        assert len(refinements) == 2
        assert extra == []

    def test_record_to_dict(self):
        record = IterationRecord(iteration=1, ndof=10, ref_ndof=40, err_est=5.0)
        data = record.to_dict()
        assert data['ndof'] == 10
        assert data['err_exact'] is None

    def test_project_reference(self):
        """粗解由参考解投影得到"""
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, project_reference=True, max_iterations=2)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs), config,
                                        essential_markers=(1, 2, 3, 4))
        result = loop.run()
        assert result.reason == 'max_iterations'
        assert len(result.solutions) == 1
        assert len(result.ref_solutions) == 1

    def test_custom_error_form(self):
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, max_iterations=1)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs), config,
                                        essential_markers=(1, 2, 3, 4), error_forms={(0, 0): l2_form})
        result = loop.run()
        assert result.records[0].err_est > 0

    def test_custom_selector(self):
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, max_iterations=2)
        selector = H1ProjBasedSelector(CandList.P_ISO)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs), config,
                                        essential_markers=(1, 2, 3, 4), selector=selector)
        result = loop.run()
        # 只提升阶数，网格不变
        assert result.spaces[0].mesh.get_num_active_elements() == 4

    @pytest.mark.parametrize("multi", [False, True])
    def test_two_components(self, multi):
        config = AdaptivityConfig(p_init=1, multi=multi, err_stop=1e-6, cand_list='HP_ISO',
                                  strategy=1, threshold=0.5, max_iterations=2)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs, neq=2), config,
                                        essential_markers=(1, 2, 3, 4))
        result = loop.run()
        meshes = [sp.mesh for sp in result.spaces]
        assert (meshes[0] is meshes[1]) == (not multi)
        assert result.records[-1].ndof == sum(sp.get_num_dofs() for sp in result.spaces)

    def test_weighted_sum_loop(self):
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, aggregation='weighted_sum',
                                  component_weights=[1.0, 0.5], max_iterations=2)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(unit_rhs, neq=2), config,
                                        essential_markers=(1, 2, 3, 4))
        result = loop.run()
        assert result.reason == 'max_iterations'

    def test_space_count_mismatch(self):
        with pytest.raises(ValueError):
            AdaptivityLoop([H1Space(square_mesh(1), 1)], poisson_form(unit_rhs, neq=2))

    def test_regularity_zero_with_anisotropic_candidates(self):
        """正则性 0 与各向异性分裂一起使用时循环正常结束"""
        config = AdaptivityConfig(p_init=1, err_stop=1e-6, cand_list='H_ANISO', mesh_regularity=0,
                                  max_iterations=3)
        layer = lambda x, y: 50.0 * np.exp(-20.0 * x)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(layer), config,
                                        essential_markers=(1, 2, 3, 4))
        result = loop.run()
        assert result.reason == 'max_iterations'
        mesh = result.spaces[0].mesh
        assert mesh.max_irregularity() == 0
        assert mesh.hanging_vertices() == {}


def smooth(x, y):
    return (np.sin(x) * np.exp(y), np.cos(x) * np.exp(y), np.sin(x) * np.exp(y))


class TestAdaptToExactFunction:
    """对已知函数的自适应（不求解方程）"""

    def test_reaches_tolerance(self):
        space = H1Space(square_mesh(2), 1)
        result = adapt_to_exact_function(space, smooth, err_stop=1.0, ndof_stop=5000, max_iterations=20)
        assert result.reason == 'converged'
        assert result.records[-1].err_est < 1.0
        assert result.records[-1].err_exact < result.records[0].err_exact
        assert len(result.records) > 1
        assert space.get_num_dofs() == result.records[-1].ndof > result.records[0].ndof

    def test_h_only_refines_mesh(self):
        space = H1Space(square_mesh(1), 1)
        selector = H1ProjBasedSelector(CandList.H_ISO)
        strategy = RefinementStrategy(StrategyKind.FRACTION_OF_MAX, 0.0)
        result = adapt_to_exact_function(space, smooth, selector, strategy, err_stop=1e-6, max_iterations=2)
        assert result.reason == 'max_iterations'
        assert space.mesh.get_num_active_elements() == 4
        assert all(space.get_element_order(e.id) == (1, 1) for e in space.mesh.active_elements())

    def test_ndof_limit(self):
        space = H1Space(square_mesh(2), 1)
        result = adapt_to_exact_function(space, smooth, ndof_stop=1, err_stop=1e-6)
        assert result.reason == 'ndof_limit'
        assert len(result.records) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
