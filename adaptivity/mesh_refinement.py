"""
单元标记策略与 hp 细化的应用

Adapt 把误差估计、单元标记、候选选择和网格/空间修改串起来：
calc_error() 计算误差表，adapt() 标记单元、为每个单元选择候选并执行。
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from core.config import STRATEGY_FRACTION_OF_TOTAL, STRATEGY_FRACTION_OF_MAX, STRATEGY_ABSOLUTE
from finite_elements.elements import RefinementType, TRIANGLE
from .error_estimator import ErrorEstimator, AggregationPolicy
from .selectors import Candidate, H1ProjBasedSelector, split_kind

TIE_TOLERANCE = 1e-3


class StrategyKind(IntEnum):
    """单元标记策略"""
    FRACTION_OF_TOTAL = STRATEGY_FRACTION_OF_TOTAL  # 累计误差达到 sqrt(T) * 总误差
    FRACTION_OF_MAX = STRATEGY_FRACTION_OF_MAX      # 误差 > T * 最大误差
    ABSOLUTE = STRATEGY_ABSOLUTE                    # 误差 > T


@dataclass(frozen=True)
class RefinementStrategy:
    kind: StrategyKind = StrategyKind.FRACTION_OF_TOTAL
    threshold: float = 0.3

    def __post_init__(self):
        object.__setattr__(self, 'kind', StrategyKind(self.kind))
        if self.threshold < 0:
            raise ValueError(f"阈值不能为负数: {self.threshold}")

    @classmethod
    def from_id(cls, strategy: int, threshold: float) -> 'RefinementStrategy':
        return cls(StrategyKind(strategy), threshold)


def mark_elements(errors: Dict[Tuple[int, int], float], strategy: RefinementStrategy) -> List[Tuple[int, int]]:
    """
    按策略标记需要细化的 (分量, 单元)
    返回按误差从大到小排列的键
    """
    ranked = sorted(errors.items(), key=lambda kv: (-kv[1], kv[0]))
    if not ranked:
        return []
    kind, T = strategy.kind, strategy.threshold

    if kind == StrategyKind.FRACTION_OF_TOTAL:
        total = sum(err for _, err in ranked)
        if total <= 0.0:
            return []
        bound = np.sqrt(T) * total
        # 误差最大的单元总被标记
        marked, processed, cutoff = [], 0.0, None
        for key, err in ranked:
            if marked and processed >= bound:
                # 与截断处误差相同的单元一并细化
                if cutoff is None or cutoff <= 0.0 or abs(err - cutoff) / cutoff > TIE_TOLERANCE:
                    break
            else:
                cutoff = err
            marked.append(key)
            processed += err
        return marked

    if kind == StrategyKind.FRACTION_OF_MAX:
        max_err = ranked[0][1]
        return [key for key, err in ranked if err > T * max_err]

    return [key for key, err in ranked if err > T]


class Adapt:
    """hp 自适应：误差估计 + 标记 + 选择 + 细化"""

    def __init__(self, spaces: Sequence, aggregation=AggregationPolicy.PER_COMPONENT,
                 weights: Optional[Sequence[float]] = None, num_workers: int = 1):
        self.spaces = list(spaces)
        self.estimator = ErrorEstimator(self.spaces, aggregation, weights, num_workers)
        self.num_workers = num_workers
        self.slns = None
        self.ref_slns = None
        self.last_marked: List[Tuple[int, int]] = []
        self.last_refined: List[Tuple[int, int]] = []
        self.forced: List[int] = []
        self.refinement_history = []
        self.computation_time = 0.0

    def set_error_form(self, i: int, j: int, form):
        self.estimator.set_error_form(i, j, form)

    def calc_error(self, slns, ref_slns, total_relative: bool = True, element_relative: bool = False) -> float:
        """计算误差表，返回总误差（相对时为百分比）"""
        if not isinstance(slns, (list, tuple)):
            slns, ref_slns = [slns], [ref_slns]
        self.slns, self.ref_slns = list(slns), list(ref_slns)
        return self.estimator.calc_errors(self.slns, self.ref_slns, total_relative, element_relative)

    def _single_mesh(self) -> bool:
        return len(self.spaces) > 1 and all(sp.mesh is self.spaces[0].mesh for sp in self.spaces)

    def adapt(self, selector: H1ProjBasedSelector, strategy: RefinementStrategy,
              mesh_regularity: int = -1) -> bool:
        """
        执行一次 hp 细化

        Returns:
            done: 没有任何单元被改变时为 True
        """
        if not self.estimator.have_errors:
            raise RuntimeError("adapt() 之前必须先调用 calc_error()")
        start_time = time.time()

        marked = mark_elements(self.estimator.ranking_errors(), strategy)
        if self.estimator.aggregation == AggregationPolicy.WEIGHTED_SUM:
            marked = [(i, eid) for _, eid in marked for i in range(len(self.spaces))]
        self.last_marked = marked

        def choose(key):
            i, eid = key
            return selector.select(self.slns[i], self.ref_slns[i], eid)

        # 所有单元都选好之后才修改网格
        if self.num_workers > 1 and len(marked) > 1:
            with ThreadPoolExecutor(max_workers=self.num_workers) as pool:
                chosen = list(pool.map(choose, marked))
        else:
            chosen = [choose(key) for key in marked]

        decisions: Dict[Tuple[int, int], Candidate] = {
            key: cand for key, cand in zip(marked, chosen) if not cand.is_noop
        }
        if self._single_mesh():
            decisions = self._unify_splits(decisions)

        # 先检查细化层数，避免网格被改到一半
        for (i, eid), cand in decisions.items():
            if cand.split is not None:
                self.spaces[i].mesh.check_refinable(eid)

        refined = self._apply(decisions)

        self.forced = []
        seen = set()
        for sp in self.spaces:
            if id(sp.mesh) not in seen:
                seen.add(id(sp.mesh))
                self.forced.extend(sp.mesh.enforce_regularity(mesh_regularity))
        for sp in self.spaces:
            sp.assign_dofs()

        self.last_refined = refined
        self.computation_time += time.time() - start_time
        self.refinement_history.append({
            'marked': len(marked),
            'refined': len(refined),
            'forced': len(self.forced),
            'ndof': [sp.get_num_dofs() for sp in self.spaces],
        })
        return not refined and not self.forced

    def _unify_splits(self, decisions):
        """
        单网格多分量：同一单元的不同分裂方式统一为各向同性分裂。
        只提升阶数的分量把新阶数用到所有子单元，
        分裂方式不同的分量取其子单元阶数的最大值。
        """
        by_element: Dict[int, Dict[int, Candidate]] = {}
        for (i, eid), cand in decisions.items():
            by_element.setdefault(eid, {})[i] = cand
        unified = {}
        for eid, cands in by_element.items():
            splits = {c.split for c in cands.values() if c.split is not None}
            if not splits:
                unified.update({(i, eid): c for i, c in cands.items()})
                continue
            split = splits.pop() if len(splits) == 1 else RefinementType.ISO
            mesh = self.spaces[0].mesh
            n_sons = 4 if split == RefinementType.ISO else 2
            for i in range(len(self.spaces)):
                cand = cands.get(i)
                if cand is None:
                    order = self.spaces[i].get_element_order(eid)
                elif cand.split is None:
                    order = cand.orders[0]
                elif cand.split == split:
                    unified[(i, eid)] = cand
                    continue
                else:
                    order = (max(o[0] for o in cand.orders), max(o[1] for o in cand.orders))
                if mesh.get_element(eid).mode == TRIANGLE:
                    order = (max(order), max(order))
                unified[(i, eid)] = Candidate(split_kind(split), split, [order] * n_sons)
        return unified

    def _apply(self, decisions) -> List[Tuple[int, int]]:
        """执行选中的候选，返回被改变的 (分量, 单元)"""
        refined = []
        split_done: Dict[Tuple[int, int], List[int]] = {}
        for (i, eid), cand in sorted(decisions.items(), key=lambda kv: (kv[0][1], kv[0][0])):
            space = self.spaces[i]
            if cand.split is None:
                space.set_element_order(eid, cand.orders[0])
            else:
                key = (id(space.mesh), eid)
                if key not in split_done:
                    split_done[key] = space.mesh.refine_element(eid, cand.split)
                for son, order in zip(split_done[key], cand.orders):
                    space.set_element_order(son, order)
            refined.append((i, eid))
        return refined
