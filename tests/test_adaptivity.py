"""
误差估计、单元标记、候选选择与 hp 细化测试
"""

import numpy as np
import pytest

from adaptivity import (
    Adapt, AggregationPolicy, CandList, Candidate, CandidateKind, ErrorEstimator, ErrorRecord,
    H1ProjBasedSelector, RefinementStrategy, StrategyKind, build_reference_spaces, candidate_dofs,
    mark_elements,
)
from core import InvalidStateError, ResourceExhaustedError, MAX_LEVEL
from finite_elements import (
    H1Space, ExactSolution, Solution, WeakForm, RefinementType, QUAD, TRIANGLE,
    int_F_v, laplace_form, l2_form, square_mesh, project_global, solve_linear, h1_error_parts,
)


def poisson_form(neq=1):
    wf = WeakForm(neq)
    for i in range(neq):
        wf.add_matrix_form(i, i, laplace_form)
        wf.add_vector_form(i, lambda wt, v, geom, ext: int_F_v(wt, lambda x, y: np.ones_like(x), v, geom))
    return wf


class _SplitEverything:
    """总是选择各向同性分裂的选择器"""

    def select(self, sln, ref, eid):
        return Candidate(CandidateKind.SPLIT_ISO, RefinementType.ISO, [(1, 1)] * 4)


def solve_pair(spaces, wf=None):
    """粗解与参考解"""
    wf = wf or poisson_form(len(spaces))
    for sp in spaces:
        sp.assign_dofs()
    ref_spaces = build_reference_spaces(spaces)
    return solve_linear(spaces, wf), solve_linear(ref_spaces, wf)


class TestMarking:
    """单元标记策略测试"""

    def test_fraction_of_max(self):
        errors = {(0, 0): 10.0, (0, 1): 4.0, (0, 2): 3.0, (0, 3): 1.0}
        marked = mark_elements(errors, RefinementStrategy(StrategyKind.FRACTION_OF_MAX, 0.3))
        assert marked == [(0, 0), (0, 1)]

    def test_absolute(self):
        errors = {(0, 0): 10.0, (0, 1): 4.0, (0, 2): 3.0, (0, 3): 1.0}
        marked = mark_elements(errors, RefinementStrategy.from_id(2, 3.5))
        assert marked == [(0, 0), (0, 1)]
        assert mark_elements(errors, RefinementStrategy.from_id(2, 100.0)) == []

    def test_fraction_of_total(self):
        """累计误差刚好达到 sqrt(T) * 总误差"""
        errors = {(0, 0): 5.0, (0, 1): 3.0, (0, 2): 1.0, (0, 3): 1.0}
        marked = mark_elements(errors, RefinementStrategy(StrategyKind.FRACTION_OF_TOTAL, 0.3))
        assert marked == [(0, 0), (0, 1)]
        total = sum(errors.values())
        kept = sum(errors[k] for k in marked)
        assert kept >= np.sqrt(0.3) * total
        assert kept - errors[marked[-1]] < np.sqrt(0.3) * total

    def test_fraction_of_total_ties(self):
        """与截断处误差相同的单元一起标记"""
        errors = {(0, i): 1.0 for i in range(4)}
        marked = mark_elements(errors, RefinementStrategy(StrategyKind.FRACTION_OF_TOTAL, 0.3))
        assert marked == [(0, 0), (0, 1), (0, 2), (0, 3)]

    def test_fraction_of_total_zero_threshold(self):
        """阈值为 0 时仍标记误差最大的单元"""
        errors = {(0, 0): 2.0, (0, 1): 5.0, (0, 2): 1.0}
        marked = mark_elements(errors, RefinementStrategy(StrategyKind.FRACTION_OF_TOTAL, 0.0))
        assert marked == [(0, 1)]

    def test_deterministic_order(self):
        """误差相同时按 (分量, 单元) 排序"""
        errors = {(1, 5): 2.0, (0, 7): 2.0, (0, 2): 2.0}
        marked = mark_elements(errors, RefinementStrategy(StrategyKind.FRACTION_OF_MAX, 0.5))
        assert marked == [(0, 2), (0, 7), (1, 5)]

    def test_empty_and_zero(self):
        strategy = RefinementStrategy()
        assert mark_elements({}, strategy) == []
        assert mark_elements({(0, 0): 0.0}, strategy) == []

    def test_invalid_strategy(self):
        with pytest.raises(ValueError):
            RefinementStrategy.from_id(5, 0.3)
        with pytest.raises(ValueError):
            RefinementStrategy(StrategyKind.ABSOLUTE, -1.0)


class TestErrorEstimator:
    """误差估计器测试"""

    def test_zero_error_when_equal(self):
        space = H1Space(square_mesh(2), 2)
        space.assign_dofs()
        fn = lambda x, y: (x * y, y, x)
        sln = project_global([space], [ExactSolution(space.mesh, fn)])[0]
        est = ErrorEstimator([space])
        assert est.calc_errors([sln], [sln]) == pytest.approx(0.0, abs=1e-10)
        assert all(v == pytest.approx(0.0, abs=1e-20) for v in est.errors.values())

    def test_relative_error_of_zero_solution(self):
        """粗解为零时相对误差为 100%，单元误差之和等于参考解范数"""
        slns, refs = solve_pair([H1Space(square_mesh(2), 1, (1, 2, 3, 4))])
        est = ErrorEstimator([slns[0].space])
        err = est.calc_errors([Solution.zero(slns[0].space)], refs)
        assert err == pytest.approx(100.0)
        assert sum(est.errors.values()) == pytest.approx(est.total_norm)
        assert len(est.errors) == 4
        assert est.get_total_error(relative=False) == pytest.approx(np.sqrt(est.total_error))

    def test_element_relative(self):
        slns, refs = solve_pair([H1Space(square_mesh(2), 1, (1, 2, 3, 4))])
        est = ErrorEstimator([slns[0].space])
        est.calc_errors(slns, refs, element_relative=True)
        assert sum(est.errors.values()) == pytest.approx(est.total_error / est.total_norm)

    def test_zero_norm_warning(self):
        space = H1Space(square_mesh(1), 1)
        space.assign_dofs()
        zero = Solution.zero(space)
        est = ErrorEstimator([space])
        with pytest.warns(RuntimeWarning, match="norm is zero"):
            err = est.calc_errors([zero], [zero])
        assert err == 0.0

    def test_records_sorted(self):
        mesh = square_mesh(2)
        mesh.refine_element(0)
        slns, refs = solve_pair([H1Space(mesh, 1, (1, 2, 3, 4))])
        est = ErrorEstimator([slns[0].space])
        est.calc_errors(slns, refs)
        records = est.get_records()
        assert len(records) == mesh.get_num_active_elements()
        errors = [r.error for r in records]
        assert errors == sorted(errors, reverse=True)
        assert all(isinstance(r, ErrorRecord) for r in records)

    def test_threaded_matches_serial(self):
        mesh = square_mesh(2)
        mesh.refine_element(3)
        slns, refs = solve_pair([H1Space(mesh, 2, (1, 2, 3, 4))])
        serial = ErrorEstimator([slns[0].space])
        threaded = ErrorEstimator([slns[0].space], num_workers=3)
        assert serial.calc_errors(slns, refs) == pytest.approx(threaded.calc_errors(slns, refs))
        for key, value in serial.errors.items():
            assert threaded.errors[key] == pytest.approx(value)

    def test_elements_under_one_base(self):
        """同一初始单元下的多层单元：单元误差之和等于全局误差"""
        mesh = square_mesh(1)
        mesh.refine_element(0)
        mesh.refine_element(mesh.get_element(0).sons[0])
        slns, refs = solve_pair([H1Space(mesh, 2, (1, 2, 3, 4))])
        est = ErrorEstimator([slns[0].space], num_workers=2)
        est.calc_errors(slns, refs, total_relative=False)
        err, norm = h1_error_parts(slns[0], refs[0])
        assert len(est.errors) == 7
        assert sum(est.errors.values()) == pytest.approx(err)
        assert est.total_norm == pytest.approx(norm)

    def test_custom_error_form(self):
        """L2 误差形式不大于 H1 误差形式"""
        slns, refs = solve_pair([H1Space(square_mesh(2), 1, (1, 2, 3, 4))])
        h1 = ErrorEstimator([slns[0].space])
        l2 = ErrorEstimator([slns[0].space])
        l2.set_error_form(0, 0, l2_form)
        h1.calc_errors(slns, refs, total_relative=False)
        l2.calc_errors(slns, refs, total_relative=False)
        assert l2.total_error < h1.total_error
        with pytest.raises(ValueError):
            l2.set_error_form(0, 1, l2_form)

    def test_weighted_sum(self):
        mesh = square_mesh(2)
        spaces = [H1Space(mesh, 1, (1, 2, 3, 4)), H1Space(mesh, 2, (1, 2, 3, 4))]
        slns, refs = solve_pair(spaces)
        est = ErrorEstimator(spaces, AggregationPolicy.WEIGHTED_SUM, weights=[1.0, 2.0])
        est.calc_errors(slns, refs)
        combined = est.ranking_errors()
        assert set(combined) == {(0, eid) for eid in range(4)}
        for eid in range(4):
            expected = est.errors[(0, eid)] + 2.0 * est.errors[(1, eid)]
            assert combined[(0, eid)] == pytest.approx(expected)

    def test_weighted_sum_validation(self):
        mesh = square_mesh(1)
        spaces = [H1Space(mesh, 1), H1Space(mesh, 1)]
        with pytest.raises(ValueError, match="权重"):
            ErrorEstimator(spaces, AggregationPolicy.WEIGHTED_SUM)
        with pytest.raises(ValueError, match="共享"):
            ErrorEstimator([H1Space(mesh, 1), H1Space(mesh.copy(), 1)],
                           AggregationPolicy.WEIGHTED_SUM, weights=[1.0, 1.0])

    def test_negative_record(self):
        with pytest.raises(ValueError):
            ErrorRecord(0, 0, -1.0)


class TestCandidates:
    """候选生成与自由度计数测试"""

    @pytest.mark.parametrize("mode, split, orders, expected", [
        (QUAD, None, [(2, 2)], 9),
        (QUAD, None, [(2, 3)], 12),
        (QUAD, RefinementType.ISO, [(1, 1)] * 4, 9),
        (QUAD, RefinementType.ISO, [(2, 2)] * 4, 25),
        (QUAD, RefinementType.HORIZONTAL, [(1, 1)] * 2, 6),
        (QUAD, RefinementType.HORIZONTAL, [(2, 2)] * 2, 15),
        (QUAD, RefinementType.VERTICAL, [(3, 3)] * 2, 28),
        (TRIANGLE, None, [(3, 3)], 10),
        (TRIANGLE, RefinementType.ISO, [(1, 1)] * 4, 6),
        (TRIANGLE, RefinementType.ISO, [(2, 2)] * 4, 15),
    ])
    def test_candidate_dofs(self, mode, split, orders, expected):
        assert candidate_dofs(mode, split, orders) == expected

    def test_from_flags(self):
        assert CandList.from_flags('hp', iso_only=False) == CandList.HP_ANISO
        assert CandList.from_flags('H', iso_only=True) == CandList.H_ISO
        assert CandList.from_flags('p', iso_only=True) == CandList.P_ISO
        with pytest.raises(ValueError):
            CandList.from_flags('q', iso_only=True)

    def test_list_properties(self):
        assert CandList.HP_ANISO.has_p and CandList.HP_ANISO.has_h
        assert CandList.H_ISO.h_only and not CandList.H_ISO.has_p
        assert not CandList.P_ANISO.has_h
        assert CandList.HP_ANISO_H.aniso_split and not CandList.HP_ANISO_H.aniso_order
        assert CandList.HP_ANISO_P.aniso_order and not CandList.HP_ANISO_P.aniso_split

    @pytest.mark.parametrize("cand_list, mode, order, expected", [
        (CandList.P_ISO, QUAD, (1, 1), 3),
        (CandList.H_ISO, QUAD, (2, 2), 2),
        (CandList.H_ANISO, QUAD, (2, 2), 4),
        (CandList.H_ANISO, TRIANGLE, (2, 2), 2),
        (CandList.HP_ISO, QUAD, (2, 2), 6),
        (CandList.P_ANISO, QUAD, (1, 1), 9),
    ])
    def test_candidate_counts(self, cand_list, mode, order, expected):
        cands = H1ProjBasedSelector(cand_list).generate_candidates(mode, order)
        assert len(cands) == expected
        assert cands[0].is_noop
        assert cands[0].orders == [order]

    def test_max_order_cap(self):
        selector = H1ProjBasedSelector(CandList.P_ISO, max_order=3)
        cands = selector.generate_candidates(QUAD, (3, 3))
        assert len(cands) == 1

    def test_h_only_keeps_order(self):
        cands = H1ProjBasedSelector(CandList.H_ANISO).generate_candidates(QUAD, (2, 3))
        for cand in cands[1:]:
            assert all(o == (2, 3) for o in cand.orders)
            assert cand.kind in (CandidateKind.SPLIT_ISO, CandidateKind.SPLIT_H, CandidateKind.SPLIT_V)

    def test_invalid_conv_exp(self):
        with pytest.raises(ValueError):
            H1ProjBasedSelector(conv_exp=0.0)


class TestSelector:
    """基于投影的候选选择测试"""

    def _pair(self, fn, order=1, cand_order_increase=1):
        mesh = square_mesh(1)
        space = H1Space(mesh, order)
        space.assign_dofs()
        ref_space = build_reference_spaces([space], cand_order_increase)[0]
        exact = ExactSolution(mesh, fn, order=6)
        sln = project_global([space], [exact])[0]
        ref = project_global([ref_space], [exact])[0]
        return sln, ref

    def test_noop_for_zero_reference(self):
        sln, ref = self._pair(lambda x, y: (0.0 * x, 0.0 * x, 0.0 * x))
        cand = H1ProjBasedSelector(CandList.HP_ANISO).select(sln, ref, 0)
        assert cand.is_noop

    def test_raise_order_for_quadratic(self):
        """参考解为 Q2 函数时 p 提升最有效"""
        sln, ref = self._pair(lambda x, y: (x * x + y * y, 2 * x, 2 * y))
        cand = H1ProjBasedSelector(CandList.P_ISO).select(sln, ref, 0)
        assert cand.kind == CandidateKind.RAISE_ORDER
        assert cand.score > 0
        assert cand.error < 1e-8

    def test_split_for_h_only(self):
        sln, ref = self._pair(lambda x, y: (np.exp(3 * x), 3 * np.exp(3 * x), 0.0 * x))
        cand = H1ProjBasedSelector(CandList.H_ISO).select(sln, ref, 0)
        assert cand.kind == CandidateKind.SPLIT_ISO
        assert cand.split == RefinementType.ISO
        assert len(cand.orders) == 4

    def test_anisotropic_split_for_one_dimensional_feature(self):
        """解只依赖 x 时竖直分裂（左右两半）优于各向同性分裂"""
        sln, ref = self._pair(lambda x, y: (x * x, 2 * x, 0.0 * x))
        cand = H1ProjBasedSelector(CandList.H_ANISO).select(sln, ref, 0)
        assert cand.split == RefinementType.VERTICAL


class TestAdapt:
    """hp 细化执行测试"""

    def test_requires_errors(self):
        space = H1Space(square_mesh(1), 1)
        with pytest.raises(RuntimeError):
            Adapt([space]).adapt(H1ProjBasedSelector(), RefinementStrategy())

    def test_h_refinement_of_all_elements(self):
        mesh = square_mesh(2)
        space = H1Space(mesh, 1, (1, 2, 3, 4))
        slns, refs = solve_pair([space])
        adapt = Adapt([space])
        err = adapt.calc_error(slns, refs)
        assert err > 0
        done = adapt.adapt(H1ProjBasedSelector(CandList.H_ISO), RefinementStrategy(StrategyKind.FRACTION_OF_MAX, 0.0))
        assert not done
        assert len(adapt.last_marked) == 4
        assert len(adapt.last_refined) == 4
        assert mesh.get_num_active_elements() == 16
        # 细化后空间已重新编号
        assert space.get_num_dofs() == 9
        assert adapt.refinement_history[-1]['refined'] == 4

    def test_p_refinement(self):
        mesh = square_mesh(2)
        space = H1Space(mesh, 1, (1, 2, 3, 4))
        slns, refs = solve_pair([space])
        adapt = Adapt([space])
        adapt.calc_error(slns, refs)
        adapt.adapt(H1ProjBasedSelector(CandList.P_ISO), RefinementStrategy(StrategyKind.FRACTION_OF_MAX, 0.0))
        assert mesh.get_num_active_elements() == 4
        assert all(space.get_element_order(e) > (1, 1) for e in range(4))

    def test_nothing_marked_is_done(self):
        space = H1Space(square_mesh(2), 1, (1, 2, 3, 4))
        slns, refs = solve_pair([space])
        adapt = Adapt([space])
        adapt.calc_error(slns, refs)
        assert adapt.adapt(H1ProjBasedSelector(), RefinementStrategy(StrategyKind.ABSOLUTE, 1e10))
        assert adapt.last_marked == []

    def test_mesh_regularity(self):
        mesh = square_mesh(2)
        mesh.refine_element(0)
        mesh.refine_element(mesh.get_element(0).sons[2])
        space = H1Space(mesh, 1, (1, 2, 3, 4))
        slns, refs = solve_pair([space])
        adapt = Adapt([space])
        adapt.calc_error(slns, refs)
        adapt.adapt(H1ProjBasedSelector(CandList.H_ISO), RefinementStrategy(StrategyKind.ABSOLUTE, 1e10),
                    mesh_regularity=0)
        assert adapt.forced
        assert mesh.hanging_vertices() == {}

    def test_depth_checked_before_changes(self):
        """有单元超出细化层数时整个 adapt 在修改网格之前失败"""
        mesh = square_mesh(1)
        eid = 0
        for _ in range(MAX_LEVEL):
            eid = mesh.refine_element(eid)[0]
        space = H1Space(mesh, 1)
        space.assign_dofs()
        ref = project_global([space], [ExactSolution(mesh, lambda x, y: (x * y, y, x))])[0]
        adapt = Adapt([space])
        adapt.calc_error([Solution.zero(space)], [ref])
        before = mesh.get_num_active_elements()
        with pytest.raises(ResourceExhaustedError):
            adapt.adapt(_SplitEverything(), RefinementStrategy(StrategyKind.FRACTION_OF_MAX, 0.0))
        assert mesh.get_num_active_elements() == before
        assert mesh.version == MAX_LEVEL

    def test_unify_splits_single_mesh(self):
        """共享网格时不同分量的不同分裂统一为各向同性分裂"""
        mesh = square_mesh(1)
        spaces = [H1Space(mesh, 1), H1Space(mesh, 2)]
        for sp in spaces:
            sp.assign_dofs()
        adapt = Adapt(spaces)
        decisions = {
            (0, 0): Candidate(CandidateKind.SPLIT_H, RefinementType.HORIZONTAL, [(1, 1), (2, 2)]),
            (1, 0): Candidate(CandidateKind.SPLIT_V, RefinementType.VERTICAL, [(3, 3), (2, 2)]),
        }
        unified = adapt._unify_splits(decisions)
        assert unified[(0, 0)].split == RefinementType.ISO
        assert unified[(0, 0)].orders == [(2, 2)] * 4
        assert unified[(1, 0)].orders == [(3, 3)] * 4
        adapt._apply(unified)
        assert mesh.get_num_active_elements() == 4
        sons = mesh.get_element(0).sons
        assert all(spaces[1].get_element_order(s) == (3, 3) for s in sons)

    def test_unify_order_only_component(self):
        mesh = square_mesh(1)
        spaces = [H1Space(mesh, 1), H1Space(mesh, 1)]
        adapt = Adapt(spaces)
        decisions = {
            (0, 0): Candidate(CandidateKind.SPLIT_ISO, RefinementType.ISO, [(1, 1)] * 4),
            (1, 0): Candidate(CandidateKind.RAISE_ORDER, None, [(3, 3)]),
        }
        unified = adapt._unify_splits(decisions)
        assert unified[(1, 0)].split == RefinementType.ISO
        assert unified[(1, 0)].orders == [(3, 3)] * 4

    def test_multimesh_components(self):
        """独立网格：每个分量只细化自己的网格"""
        spaces = [H1Space(square_mesh(2), 1, (1, 2, 3, 4)), H1Space(square_mesh(2), 1, (1, 2, 3, 4))]
        slns, refs = solve_pair(spaces)
        adapt = Adapt(spaces)
        adapt.calc_error(slns, refs)
        adapt.adapt(H1ProjBasedSelector(CandList.H_ISO), RefinementStrategy(StrategyKind.FRACTION_OF_MAX, 0.0))
        assert spaces[0].mesh.get_num_active_elements() == 16
        assert spaces[1].mesh.get_num_active_elements() == 16
        assert spaces[0].mesh is not spaces[1].mesh

    def test_inactive_assembly_list(self):
        mesh = square_mesh(1)
        space = H1Space(mesh, 1)
        mesh.refine_element(0)
        space.assign_dofs()
        with pytest.raises(InvalidStateError):
            space.get_assembly_list(0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
