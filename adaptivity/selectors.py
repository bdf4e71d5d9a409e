"""
hp 细化候选的选择器

对每个被标记的单元，把参考解投影到每个候选（不变、h 分裂、p 提升、hp 组合）
对应的分片多项式空间上，用投影误差与新增自由度数评分，选出最优候选。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from core.config import MAX_ORDER
from finite_elements.basis_functions import H1Shapeset, full_edge_orders, num_functions, get_layout
from finite_elements.elements import QUAD, REFERENCE_VERTICES, RefinementType, son_maps
from finite_elements.solution import integration_regions
from finite_elements.transformations import dN_dx

TINY = np.finfo(float).tiny


class CandidateKind(Enum):
    """候选的类别"""
    NOOP = 'noop'
    SPLIT_ISO = 'split_iso'
    SPLIT_H = 'split_h'
    SPLIT_V = 'split_v'
    RAISE_ORDER = 'raise_order'
    SPLIT_RAISE = 'split_raise'


class CandList(Enum):
    """可用的候选集合"""
    P_ISO = 'P_ISO'
    P_ANISO = 'P_ANISO'
    H_ISO = 'H_ISO'
    H_ANISO = 'H_ANISO'
    HP_ISO = 'HP_ISO'
    HP_ANISO_H = 'HP_ANISO_H'
    HP_ANISO_P = 'HP_ANISO_P'
    HP_ANISO = 'HP_ANISO'

    @classmethod
    def from_flags(cls, kind: str, iso_only: bool) -> 'CandList':
        """kind in {'p', 'h', 'hp'}"""
        table = {
            ('p', True): cls.P_ISO, ('p', False): cls.P_ANISO,
            ('h', True): cls.H_ISO, ('h', False): cls.H_ANISO,
            ('hp', True): cls.HP_ISO, ('hp', False): cls.HP_ANISO,
        }
        key = (kind.lower(), bool(iso_only))
        if key not in table:
            raise ValueError(f"未知的候选类型: {kind}")
        return table[key]

    @property
    def has_p(self) -> bool:
        return self.name.startswith('P') or self.name.startswith('HP')

    @property
    def has_h(self) -> bool:
        return self.name.startswith('H')

    @property
    def h_only(self) -> bool:
        return self in (CandList.H_ISO, CandList.H_ANISO)

    @property
    def aniso_split(self) -> bool:
        return self in (CandList.H_ANISO, CandList.HP_ANISO_H, CandList.HP_ANISO)

    @property
    def aniso_order(self) -> bool:
        return self in (CandList.P_ANISO, CandList.HP_ANISO_P, CandList.HP_ANISO)


@dataclass
class Candidate:
    """一个细化候选：split 为 None 时只改变阶数"""
    kind: CandidateKind
    split: Optional[RefinementType]
    orders: List[Tuple[int, int]]  # 每个子单元（或单元本身）的阶数
    error: float = 0.0
    dofs: int = 0
    score: float = 0.0

    @property
    def is_noop(self) -> bool:
        return self.kind == CandidateKind.NOOP


def candidate_dofs(mode, split, orders) -> int:
    """候选在单元内部的连续分片多项式空间维数"""
    if split is None:
        return num_functions(mode, orders[0])
    ref = REFERENCE_VERTICES[mode]
    vertices = set()
    edges: Dict[frozenset, List[int]] = {}
    bubbles = 0
    for (A, b), order in zip(son_maps(mode, split), orders):
        keys = [tuple(np.round(p, 8)) for p in ref @ A.T + b]
        vertices.update(keys)
        q = full_edge_orders(mode, order)
        for i in range(len(keys)):
            edge = frozenset((keys[i], keys[(i + 1) % len(keys)]))
            edges.setdefault(edge, []).append(q[i])
        bubbles += sum(1 for item in get_layout(mode, tuple(order), tuple(q)) if item[0] == 'b')
    return len(vertices) + sum(min(qs) - 1 for qs in edges.values()) + bubbles


class H1ProjBasedSelector:
    """
    基于 H1 投影的候选选择器

    score = (log err0 - log err_c) / (dofs_c - dofs0) ** conv_exp
    只对误差更小且自由度更多的候选计分，最佳得分不大于 0 时保持不变。
    """

    def __init__(self, cand_list: CandList = CandList.HP_ANISO, conv_exp: float = 1.0,
                 max_order: int = MAX_ORDER, shapeset: Optional[H1Shapeset] = None):
        if conv_exp <= 0:
            raise ValueError("conv_exp 必须为正数")
        self.cand_list = CandList(cand_list)
        self.conv_exp = conv_exp
        self.max_order = min(int(max_order), MAX_ORDER)
        self.shapeset = shapeset or H1Shapeset()

    # ---- 候选生成 ----
    def _cap(self, q):
        return max(1, min(q, self.max_order))

    def generate_candidates(self, mode, order) -> List[Candidate]:
        """对阶数为 order 的单元生成候选（第一个总是 NOOP）"""
        px, py = order
        cands = [Candidate(CandidateKind.NOOP, None, [order])]
        cl = self.cand_list
        seen = set()

        def add(kind, split, orders):
            key = (split, tuple(orders))
            if key not in seen:
                seen.add(key)
                cands.append(Candidate(kind, split, list(orders)))

        if cl.has_p and not cl.h_only:
            if mode == QUAD and cl.aniso_order:
                for dx in range(3):
                    for dy in range(3):
                        new = (self._cap(px + dx), self._cap(py + dy))
                        if new != (px, py):
                            add(CandidateKind.RAISE_ORDER, None, [new])
            else:
                for d in (1, 2):
                    new = (self._cap(px + d), self._cap(py + d))
                    if new != (px, py):
                        add(CandidateKind.RAISE_ORDER, None, [new])

        splits = [RefinementType.ISO]
        if mode == QUAD and cl.aniso_split:
            splits += [RefinementType.HORIZONTAL, RefinementType.VERTICAL]
        if cl.has_h:
            for split in splits:
                n_sons = len(son_maps(mode, split))
                if cl.h_only:
                    add(split_kind(split), split, [order] * n_sons)
                    continue
                for son_order in self._son_orders(mode, order):
                    kind = split_kind(split) if son_order == order else CandidateKind.SPLIT_RAISE
                    add(kind, split, [son_order] * n_sons)
        return cands

    def _son_orders(self, mode, order):
        px, py = order
        rx = range(max(1, (px + 1) // 2), self._cap(px + 1) + 1)
        ry = range(max(1, (py + 1) // 2), self._cap(py + 1) + 1)
        if mode == QUAD and self.cand_list.aniso_order:
            return [(qx, qy) for qx in rx for qy in ry]
        p = max(px, py)
        return [(q, q) for q in range(max(1, (p + 1) // 2), self._cap(p + 1) + 1)]

    # ---- 投影误差 ----
    def _samples(self, sln, ref, eid):
        """
        粗单元 eid 内参考解的积分样本：(单元参考坐标点, 初始单元Jacobi逆, 物理权, 参考解值)
        按参考网格叶单元分块，只遍历单元 eid 下面的子树
        """
        mesh = sln.mesh
        el = mesh.get_element(eid)
        pieces = []
        order = ref.max_order + 2
        for eids, pts_base, wt, geom, J_inv in integration_regions(
                [mesh, ref.mesh], [sln.leaves, ref.leaves], el.base, order, root=eid):
            pieces.append((el.to_local(pts_base), J_inv, wt, ref.values(eids[1], pts_base)))
        return el, pieces

    def _projection_error(self, el, pieces, split, orders) -> float:
        """参考解在候选空间上（逐子单元）的 H1 投影误差平方"""
        maps = [(np.eye(2), np.zeros(2))] if split is None else son_maps(el.mode, split)
        rows_by_son = [[] for _ in maps]
        for pts, J_inv, wt, f in pieces:
            owner = _assign_points(el.mode, maps, pts)
            for s, (A, b) in enumerate(maps):
                idx = np.nonzero(owner == s)[0]
                if len(idx) == 0:
                    continue
                rows_by_son[s].append((pts[idx], J_inv[idx], wt[idx], f.val[idx], f.dx[idx], f.dy[idx]))
        total = 0.0
        for s, (A, b) in enumerate(maps):
            if not rows_by_son[s]:
                continue
            pts, J_inv, wt, u, ux, uy = (np.concatenate(c) for c in zip(*rows_by_son[s]))
            local = np.linalg.solve(A, (pts - b).T).T
            order = orders[s]
            N, dxi, deta = self.shapeset.evaluate(el.mode, order, full_edge_orders(el.mode, order), local)
            dx, dy = dN_dx(dxi, deta, J_inv, el.A @ A)
            sw = np.sqrt(wt)[:, None]
            M = np.vstack([sw * N, sw * dx, sw * dy])
            rhs = np.concatenate([sw[:, 0] * u, sw[:, 0] * ux, sw[:, 0] * uy])
            coef = np.linalg.lstsq(M, rhs, rcond=None)[0]
            total += float(np.sum((M @ coef - rhs) ** 2))
        return total

    def select(self, sln, ref, eid: int) -> Candidate:
        """为粗解 sln 的单元 eid 选择细化候选"""
        order = sln.element_order(eid)
        el, pieces = self._samples(sln, ref, eid)
        cands = self.generate_candidates(el.mode, order)
        for cand in cands:
            cand.error = np.sqrt(max(self._projection_error(el, pieces, cand.split, cand.orders), 0.0))
            cand.dofs = candidate_dofs(el.mode, cand.split, cand.orders)
        base = cands[0]
        best = base
        for cand in cands[1:]:
            if cand.error < base.error and cand.dofs > base.dofs:
                gain = np.log(max(base.error, TINY)) - np.log(max(cand.error, TINY))
                cand.score = float(gain / (cand.dofs - base.dofs) ** self.conv_exp)
            if cand.score > best.score:
                best = cand
        return best


def split_kind(split):
    return {
        RefinementType.ISO: CandidateKind.SPLIT_ISO,
        RefinementType.HORIZONTAL: CandidateKind.SPLIT_H,
        RefinementType.VERTICAL: CandidateKind.SPLIT_V,
    }[split]


def _assign_points(mode, maps, pts):
    """把单元参考坐标点分配到包含它的子单元"""
    owner = np.full(len(pts), -1)
    best = np.full(len(pts), np.inf)
    for s, (A, b) in enumerate(maps):
        local = np.linalg.solve(A, (pts - b).T).T
        if mode == QUAD:
            violation = np.max(np.abs(local), axis=1) - 1.0
        else:
            violation = np.max(np.stack([-1.0 - local[:, 0], -1.0 - local[:, 1], local[:, 0] + local[:, 1]]), axis=0)
        better = violation < best
        owner[better] = s
        best[better] = violation[better]
    return owner
