"""
误差估计器实现

用参考解代替精确解：对每个粗单元积分误差形式
form_ij(ref_i - sln_i, ref_j - sln_j)，得到 (分量, 单元) 的误差表。
"""

import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from finite_elements.assembly import h1_form
from finite_elements.solution import integration_regions

EPS = 1e-14


@dataclass
class ErrorRecord:
    """一个 (分量, 单元) 的误差"""
    component: int
    element_id: int
    error: float

    def __post_init__(self):
        if self.error < 0:
            raise ValueError("误差值不能为负数")


class AggregationPolicy(Enum):
    """多分量误差的合并方式"""
    PER_COMPONENT = 'per_component'  # (分量, 单元) 独立排序
    WEIGHTED_SUM = 'weighted_sum'    # 同一单元按给定权重求和（仅单网格模式）


class ErrorEstimator:
    """基于参考解的单元误差估计器"""

    def __init__(self, spaces: Sequence, aggregation: AggregationPolicy = AggregationPolicy.PER_COMPONENT,
                 weights: Optional[Sequence[float]] = None, num_workers: int = 1):
        self.spaces = list(spaces)
        self.neq = len(self.spaces)
        if self.neq == 0:
            raise ValueError("至少需要一个空间")
        self.aggregation = AggregationPolicy(aggregation)
        if self.aggregation == AggregationPolicy.WEIGHTED_SUM:
            if weights is None or len(weights) != self.neq:
                raise ValueError("weighted_sum 需要为每个分量给出权重")
            if any(sp.mesh is not self.spaces[0].mesh for sp in self.spaces):
                raise ValueError("weighted_sum 只能用于所有分量共享同一网格的情形")
        self.weights = None if weights is None else [float(w) for w in weights]
        self.num_workers = num_workers
        self.error_forms: Dict[Tuple[int, int], Callable] = {(i, i): h1_form for i in range(self.neq)}

        self.errors: Dict[Tuple[int, int], float] = {}
        self.component_errors: List[float] = []
        self.component_norms: List[float] = []
        self.total_error = 0.0
        self.total_norm = 0.0
        self.have_errors = False

    def set_error_form(self, i: int, j: int, form: Callable):
        """设置 (i, j) 分量对的误差形式 form(wt, u, v, geom)"""
        if not (0 <= i < self.neq and 0 <= j < self.neq):
            raise ValueError(f"分量编号 ({i}, {j}) 超出范围")
        self.error_forms[(i, j)] = form

    def _integrate_element(self, i, eid, slns, refs):
        """分量 i 的粗单元 eid 上的误差与参考解范数积分"""
        err, norm = 0.0, 0.0
        base_id = slns[i].mesh.get_element(eid).base
        for (ci, j), form in self.error_forms.items():
            if ci != i:
                continue
            fields = [slns[i], refs[i], slns[j], refs[j]]
            meshes = [f.mesh for f in fields]
            leaves = [f.leaves for f in fields]
            order = max(f.max_order for f in fields)
            for eids, pts_base, wt, geom, _ in integration_regions(meshes, leaves, base_id, order, root=eid):
                vals = [f.values(e, pts_base) for f, e in zip(fields, eids)]
                err += float(form(wt, vals[1] - vals[0], vals[3] - vals[2], geom))
                norm += float(form(wt, vals[1], vals[3], geom))
        return err, norm

    def calc_errors(self, slns: Sequence, ref_slns: Sequence,
                    total_relative: bool = True, element_relative: bool = False) -> float:
        """
        计算误差表和总误差

        Parameters:
            slns: 各分量粗解
            ref_slns: 各分量参考解
            total_relative: 返回相对误差（百分比）
            element_relative: 单元误差除以参考解总范数

        Returns:
            总误差估计
        """
        if len(slns) != self.neq or len(ref_slns) != self.neq:
            raise ValueError("解的个数与空间个数不一致")
        keys = [(i, eid) for i, sln in enumerate(slns) for eid in sorted(sln.leaves)]
        if self.num_workers > 1:
            with ThreadPoolExecutor(max_workers=self.num_workers) as pool:
                parts = list(pool.map(lambda key: self._integrate_element(key[0], key[1], slns, ref_slns), keys))
        else:
            parts = [self._integrate_element(i, eid, slns, ref_slns) for i, eid in keys]

        errors: Dict[Tuple[int, int], float] = {}
        norms = np.zeros(self.neq)
        for (i, eid), (err, norm) in zip(keys, parts):
            errors[(i, eid)] = err
            norms[i] += norm
        # 交叉项可能为负
        errors = {key: abs(value) for key, value in errors.items()}
        norms = np.abs(norms)

        total_error = sum(errors.values())
        total_norm = float(norms.sum())
        if total_norm < EPS:
            warnings.warn("Reference solution norm is zero; relative errors use a floor value", RuntimeWarning)
            total_norm = EPS

        self.component_errors = [sum(v for (i, _), v in errors.items() if i == c) for c in range(self.neq)]
        self.component_norms = norms.tolist()
        self.total_error = total_error
        self.total_norm = total_norm
        if element_relative:
            errors = {key: value / total_norm for key, value in errors.items()}
        self.errors = errors
        self.have_errors = True

        if total_relative:
            return 100.0 * float(np.sqrt(total_error / total_norm))
        return float(np.sqrt(total_error))

    def get_records(self) -> List[ErrorRecord]:
        """按误差从大到小排列的误差表（相同误差按分量、单元编号排序）"""
        if not self.have_errors:
            return []
        records = [ErrorRecord(i, eid, err) for (i, eid), err in self.errors.items()]
        records.sort(key=lambda r: (-r.error, r.component, r.element_id))
        return records

    def ranking_errors(self) -> Dict[Tuple[int, int], float]:
        """
        标记策略使用的误差：
        PER_COMPONENT 直接使用 (分量, 单元) 误差；
        WEIGHTED_SUM 返回 (0, 单元) -> 加权和
        """
        if self.aggregation == AggregationPolicy.PER_COMPONENT:
            return dict(self.errors)
        combined: Dict[Tuple[int, int], float] = {}
        for (i, eid), err in self.errors.items():
            combined[(0, eid)] = combined.get((0, eid), 0.0) + self.weights[i] * err
        return combined

    def get_total_error(self, relative: bool = True) -> float:
        if relative:
            return 100.0 * float(np.sqrt(self.total_error / self.total_norm))
        return float(np.sqrt(self.total_error))
