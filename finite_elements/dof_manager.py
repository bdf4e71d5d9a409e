"""
自由度管理模块：H1 空间

每个激活单元有一个多项式阶数 (px, py)。自由度编号每次都从头计算：
先编号全部顶点，再编号全部边，最后编号单元内部泡函数。
悬挂顶点和被约束的细边不产生自由度，它们的局部形函数通过
粗边迹的线性组合表示（可递归嵌套）。
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from core.config import MAX_ORDER
from core.exceptions import InvalidStateError, ResourceExhaustedError
from .basis_functions import H1Shapeset, lobatto, full_edge_orders
from .elements import QUAD, TRIANGLE
from .mesh import Mesh, seg
from .quadrature import gauss_legendre_1d

MAX_DOFS = 2 ** 31 - 1


@dataclass
class AssemblyList:
    """
    单元的装配表
    coef[l, c] 是全局基函数 dofs[c] 在本单元上按局部形函数 l 展开的系数
    """
    eid: int
    mode: str
    order: Tuple[int, int]
    edge_orders: Tuple[int, ...]
    dofs: np.ndarray
    coef: np.ndarray

    @property
    def n_local(self) -> int:
        return self.coef.shape[0]


class H1Space:
    """网格上的 H1 连续有限元空间"""

    def __init__(self, mesh: Mesh, order=1, essential_markers=(), shapeset: Optional[H1Shapeset] = None):
        self.mesh = mesh
        self.shapeset = shapeset or H1Shapeset()
        self.essential_markers = frozenset(essential_markers)
        self.default_order = self._normalize_order(order, QUAD)
        self._orders: Dict[int, Tuple[int, int]] = {}
        self._order_version = 0
        self._stamp = None
        self._ndof = 0
        self._lists: Dict[int, AssemblyList] = {}
        self._seg_orders: Dict[Tuple[int, int], int] = {}

    # ---- 阶数 ----
    @staticmethod
    def _normalize_order(order, mode) -> Tuple[int, int]:
        if np.isscalar(order):
            px = py = int(order)
        else:
            px, py = (int(o) for o in order)
        if not (1 <= px <= MAX_ORDER and 1 <= py <= MAX_ORDER):
            raise ValueError(f"多项式阶数必须在 1 到 {MAX_ORDER} 之间: {order}")
        if mode == TRIANGLE and px != py:
            raise ValueError(f"三角形单元不支持各向异性阶数: {order}")
        return px, py

    def set_uniform_order(self, order):
        """所有单元使用同一阶数"""
        self.default_order = self._normalize_order(order, QUAD)
        self._orders.clear()
        self._order_version += 1

    def set_element_order(self, eid: int, order):
        el = self.mesh.get_element(eid)
        self._orders[eid] = self._normalize_order(order, el.mode)
        self._order_version += 1

    def get_element_order(self, eid: int) -> Tuple[int, int]:
        """单元阶数；未单独设置时继承最近的祖先"""
        el = self.mesh.get_element(eid)
        node = el
        while node is not None:
            if node.id in self._orders:
                order = self._orders[node.id]
                break
            node = None if node.parent is None else self.mesh.elements[node.parent]
        else:
            order = self.default_order
        if el.mode == TRIANGLE and order[0] != order[1]:
            return (max(order), max(order))
        return order

    def dup(self, mesh: Mesh) -> 'H1Space':
        """在另一个网格上创建同类空间（阶数另行复制）"""
        return H1Space(mesh, self.default_order, self.essential_markers, self.shapeset)

    def copy_orders(self, source: 'H1Space', order_increase: int = 0):
        """
        从几何上对应的 source 单元复制阶数并加上 order_increase
        两个网格必须来自同一初始网格
        """
        if not self.mesh.compatible_with(source.mesh):
            raise ValueError("copy_orders 要求两个网格来自同一初始网格")
        self._orders.clear()
        for el in self.mesh.active_elements():
            center = el.to_base(np.array([[0.0, 0.0]]) if el.mode == QUAD else np.array([[-1 / 3, -1 / 3]]))[0]
            src_id, _ = source.mesh.locate(el.base, center)
            px, py = source.get_element_order(src_id)
            order = (min(px + order_increase, MAX_ORDER), min(py + order_increase, MAX_ORDER))
            self._orders[el.id] = self._normalize_order(order, el.mode)
        self._order_version += 1

    # ---- 自由度编号 ----
    def _natural_edge_order(self, el, i: int) -> int:
        return full_edge_orders(el.mode, self.get_element_order(el.id))[i]

    def assign_dofs(self, first_dof: int = 0) -> int:
        """重新编号全部自由度，返回自由度总数"""
        mesh = self.mesh
        active = list(mesh.active_elements())
        users = mesh.segment_users()
        hanging = mesh.hanging_vertices()

        # 被约束的细边 -> 约束它的粗边
        constrained = {}
        for key in users:
            parent = mesh.segment_parent(key)
            coarse = None if parent is None else mesh.constraining_segment(parent, users)
            if coarse is not None:
                constrained[key] = coarse

        # 最小阶规则
        seg_orders: Dict[Tuple[int, int], int] = {}
        for key, owners in users.items():
            q = min(self._natural_edge_order(mesh.elements[eid], i) for eid, i in owners)
            target = constrained.get(key, key)
            seg_orders[target] = min(seg_orders.get(target, MAX_ORDER), q)
        for key, coarse in constrained.items():
            seg_orders[key] = seg_orders[coarse]

        essential_segs = {key for key in users
                          if key not in constrained and mesh.boundary.get(key) in self.essential_markers}
        essential_verts = {v for key in essential_segs for v in key}

        ndof = first_dof
        vertex_dofs: Dict[int, int] = {}
        for el in active:
            for v in el.vertices:
                if v in vertex_dofs or v in hanging or v in essential_verts:
                    continue
                vertex_dofs[v] = ndof
                ndof += 1
        edge_dofs: Dict[Tuple[int, int], List[int]] = {}
        for el in active:
            for a, b in el.edges():
                key = seg(a, b)
                if key in edge_dofs or key in constrained or key in essential_segs:
                    continue
                n = seg_orders[key] - 1
                edge_dofs[key] = list(range(ndof, ndof + n))
                ndof += n
        bubble_dofs: Dict[int, List[int]] = {}
        for el in active:
            n = sum(1 for item in self._layout(el, seg_orders) if item[0] == 'b')
            bubble_dofs[el.id] = list(range(ndof, ndof + n))
            ndof += n
        if ndof > MAX_DOFS:
            raise ResourceExhaustedError(f"自由度数目 {ndof} 超过上限 {MAX_DOFS}")

        builder = _ConstraintBuilder(mesh, hanging, seg_orders, vertex_dofs, edge_dofs)
        lists = {}
        for el in active:
            lists[el.id] = self._build_list(el, seg_orders, constrained, builder, bubble_dofs[el.id])

        self._lists = lists
        self._seg_orders = seg_orders
        self._ndof = ndof - first_dof
        self._stamp = (mesh.version, self._order_version)
        return self._ndof

    def _edge_orders(self, el, seg_orders):
        return tuple(seg_orders[seg(a, b)] for a, b in el.edges())

    def _layout(self, el, seg_orders):
        return self.shapeset.get_layout(el.mode, self.get_element_order(el.id), self._edge_orders(el, seg_orders))

    def _build_list(self, el, seg_orders, constrained, builder, bubbles) -> AssemblyList:
        edge_orders = self._edge_orders(el, seg_orders)
        order = self.get_element_order(el.id)
        layout = self.shapeset.get_layout(el.mode, order, edge_orders)
        rows = []
        next_bubble = iter(bubbles)
        for item in layout:
            if item[0] == 'v':
                rows.append(builder.vertex_list(el.vertices[item[1]]))
            elif item[0] == 'e':
                i, k = item[1], item[2]
                a, b = el.edge(i)
                key = seg(a, b)
                if key in constrained:
                    rows.append(builder.fine_edge_list(constrained[key], a, b, k))
                else:
                    sign = 1.0 if a < b else -1.0
                    rows.append({d: sign ** k for d in builder.edge_dof(key, k)})
            else:
                rows.append({next(next_bubble): 1.0})
        dofs = np.array(sorted({d for row in rows for d in row}), dtype=int)
        col = {d: c for c, d in enumerate(dofs)}
        coef = np.zeros((len(layout), len(dofs)))
        for r, row in enumerate(rows):
            for d, c in row.items():
                coef[r, col[d]] += c
        return AssemblyList(el.id, el.mode, order, edge_orders, dofs, coef)

    # ---- 查询 ----
    def _check_assigned(self):
        if self._stamp is None:
            raise InvalidStateError("尚未调用 assign_dofs")
        if self._stamp != (self.mesh.version, self._order_version):
            raise InvalidStateError("网格或阶数在 assign_dofs 之后已被修改，需要重新编号")

    def get_num_dofs(self) -> int:
        self._check_assigned()
        return self._ndof

    def get_assembly_list(self, eid: int) -> AssemblyList:
        self._check_assigned()
        el = self.mesh.get_element(eid)
        if not el.active:
            raise InvalidStateError(f"单元 {eid} 未激活，没有装配表")
        return self._lists[eid]

    def get_element_dofs(self, eid: int) -> List[int]:
        """单元涉及的全局自由度（未激活单元为空）"""
        self._check_assigned()
        if not self.mesh.get_element(eid).active:
            return []
        return self._lists[eid].dofs.tolist()

    def get_edge_order(self, a: int, b: int) -> int:
        self._check_assigned()
        return self._seg_orders[seg(a, b)]

    def is_assigned(self) -> bool:
        return self._stamp == (self.mesh.version, self._order_version)


class _ConstraintBuilder:
    """悬挂顶点与被约束细边的约束表（带缓存的递归组合）"""

    def __init__(self, mesh, hanging, seg_orders, vertex_dofs, edge_dofs):
        self.mesh = mesh
        self.hanging = hanging
        self.seg_orders = seg_orders
        self.vertex_dofs = vertex_dofs
        self.edge_dofs = edge_dofs
        self._vertex_cache: Dict[int, Dict[int, float]] = {}
        self._fit_cache = {}

    def edge_dof(self, key, k):
        dofs = self.edge_dofs.get(key)
        return [] if dofs is None else [dofs[k - 2]]

    def _traces(self, coarse):
        """粗边上全局迹函数及其约束表：两个端点，再是 k = 2..q 的边函数"""
        q = self.seg_orders[coarse]
        items = [(0, self.vertex_list(coarse[0])), (1, self.vertex_list(coarse[1]))]
        items.extend((k, {d: 1.0 for d in self.edge_dof(coarse, k)}) for k in range(2, q + 1))
        return items

    def vertex_list(self, v) -> Dict[int, float]:
        cached = self._vertex_cache.get(v)
        if cached is not None:
            return cached
        if v in self.vertex_dofs:
            result = {self.vertex_dofs[v]: 1.0}
        elif v in self.hanging:
            coarse = self.hanging[v]
            t = self.mesh.vertex_param(coarse, v)
            result = {}
            for k, lst in self._traces(coarse):
                _accumulate(result, lst, float(lobatto(k, t)))
        else:
            result = {}  # 本质边界
        self._vertex_cache[v] = result
        return result

    def _fit(self, coarse, ta, tb):
        """粗边迹限制到 [ta, tb] 后去掉线性部分，按 Lobatto 多项式展开"""
        key = (coarse, ta, tb)
        if key in self._fit_cache:
            return self._fit_cache[key]
        q = self.seg_orders[coarse]
        s, _ = gauss_legendre_1d(q + 2)
        t = ta + (s + 1) * (tb - ta) / 2
        B = np.stack([lobatto(k, s) for k in range(2, q + 1)], axis=1)
        fits = {}
        for k in [0, 1] + list(range(2, q + 1)):
            r = lobatto(k, t) - lobatto(k, ta) * lobatto(0, s) - lobatto(k, tb) * lobatto(1, s)
            fits[k] = np.linalg.lstsq(B, r, rcond=None)[0]
        self._fit_cache[key] = fits
        return fits

    def fine_edge_list(self, coarse, a, b, k) -> Dict[int, float]:
        ta = self.mesh.vertex_param(coarse, a)
        tb = self.mesh.vertex_param(coarse, b)
        fits = self._fit(coarse, ta, tb)
        result = {}
        for g, lst in self._traces(coarse):
            c = fits[g][k - 2]
            if abs(c) > 1e-14:
                _accumulate(result, lst, c)
        return result


def _accumulate(target, lst, factor):
    for d, c in lst.items():
        target[d] = target.get(d, 0.0) + factor * c
