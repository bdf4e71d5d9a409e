"""
解场：系数向量 + 空间的只读快照，以及精确解与 H1 范数

解在创建时记录当时的叶单元和装配表，之后网格被继续细化也不影响它的求值。
"""

from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Sequence, Tuple

import numpy as np

from .mesh import Mesh, traverse_union
from .quadrature import points_weights
from .transformations import reference_map, jacobian_det, jacobian_inv, dN_dx


@dataclass
class Func:
    """积分点上的函数值与物理梯度"""
    val: np.ndarray
    dx: np.ndarray
    dy: np.ndarray

    def __sub__(self, other: 'Func') -> 'Func':
        return Func(self.val - other.val, self.dx - other.dx, self.dy - other.dy)


@dataclass
class Geom:
    """积分点的物理坐标"""
    x: np.ndarray
    y: np.ndarray
    eid: int = -1


def shape_functions(shapeset, al, el, pts_base, J_inv) -> Func:
    """单元局部形函数在点上的值，形状 (n_local, n_pts)"""
    local = el.to_local(pts_base)
    N, dxi, deta = shapeset.evaluate(al.mode, al.order, al.edge_orders, local)
    dx, dy = dN_dx(dxi, deta, J_inv, el.A)
    return Func(N.T, dx.T, dy.T)


class Solution:
    """空间上的有限元解"""

    def __init__(self, space, coefficients=None):
        n = space.get_num_dofs()
        if coefficients is None:
            coefficients = np.zeros(n)
        coefficients = np.asarray(coefficients, dtype=float)
        if coefficients.shape != (n,):
            raise ValueError(f"系数向量长度 {coefficients.shape} 与自由度数 {n} 不一致")
        self.space = space
        self.mesh: Mesh = space.mesh
        self.coefficients = coefficients.copy()
        self.leaves = frozenset(e.id for e in self.mesh.active_elements())
        self._lists = {eid: space.get_assembly_list(eid) for eid in self.leaves}
        self.shapeset = space.shapeset
        self.max_order = max((max(al.order) for al in self._lists.values()), default=1)

    @classmethod
    def zero(cls, space) -> 'Solution':
        return cls(space)

    def get_num_dofs(self) -> int:
        return len(self.coefficients)

    def element_order(self, eid: int) -> Tuple[int, int]:
        return self._lists[eid].order

    def local_coefficients(self, eid: int) -> np.ndarray:
        al = self._lists[eid]
        return al.coef @ self.coefficients[al.dofs]

    def values(self, eid: int, pts_base) -> Func:
        """在叶单元 eid 内、以初始单元参考坐标给出的点上求值"""
        if eid not in self.leaves:
            raise KeyError(f"单元 {eid} 不是该解的叶单元")
        el = self.mesh.elements[eid]
        pts_base = np.atleast_2d(pts_base)
        _, J = reference_map(el.mode, self.mesh.base_coords(eid), pts_base)
        phi = shape_functions(self.shapeset, self._lists[eid], el, pts_base, jacobian_inv(J))
        c = self.local_coefficients(eid)
        return Func(c @ phi.val, c @ phi.dx, c @ phi.dy)

    def values_at(self, base_id: int, pts_base) -> Func:
        """在初始单元 base_id 内任意点上求值（逐点在细分树中定位）"""
        pts_base = np.atleast_2d(pts_base)
        out = Func(np.empty(len(pts_base)), np.empty(len(pts_base)), np.empty(len(pts_base)))
        owners = [self.mesh.locate(base_id, p, self.leaves)[0] for p in pts_base]
        for eid in set(owners):
            idx = np.array([i for i, o in enumerate(owners) if o == eid])
            f = self.values(eid, pts_base[idx])
            out.val[idx], out.dx[idx], out.dy[idx] = f.val, f.dx, f.dy
        return out


class ExactSolution:
    """
    解析解 fn(x, y) -> (u, du/dx, du/dy)
    在联合遍历中不细分区域
    """

    def __init__(self, mesh: Mesh, fn: Callable, order: int = 4):
        self.mesh = mesh
        self.fn = fn
        self.leaves = frozenset(range(mesh.nbase))
        self.max_order = order

    def values(self, eid: int, pts_base) -> Func:
        el = self.mesh.get_element(eid)
        x, _ = reference_map(el.mode, self.mesh.base_coords(eid), np.atleast_2d(pts_base))
        u, dudx, dudy = self.fn(x[:, 0], x[:, 1])
        shape = x[:, 0].shape
        return Func(np.broadcast_to(u, shape).astype(float),
                    np.broadcast_to(dudx, shape).astype(float),
                    np.broadcast_to(dudy, shape).astype(float))

    values_at = values


def integration_regions(meshes: Sequence[Mesh], leaves, base_id: int, order: int,
                        root: Optional[int] = None) -> Iterator:
    """
    联合遍历初始单元 base_id（或第一个网格的单元 root）的积分区域
    生成 (单元ID元组, 初始单元参考坐标点, 物理积分权, Geom, 初始单元Jacobi逆矩阵)
    """
    mode = meshes[0].get_element(base_id).mode
    pts_ref, wts_ref = points_weights(mode, order)
    coords = meshes[0].base_coords(base_id)
    for eids, A, b in traverse_union(meshes, base_id, leaves, root):
        pts_base = pts_ref @ A.T + b
        x, J = reference_map(mode, coords, pts_base)
        wt = wts_ref * np.abs(jacobian_det(J)) * abs(np.linalg.det(A))
        yield eids, pts_base, wt, Geom(x[:, 0], x[:, 1], eids[0]), jacobian_inv(J)


def integrate(fields: Sequence, form: Callable, base_ids=None, order: Optional[int] = None) -> float:
    """
    对若干同源网格上的场做联合积分：sum form(wt, [Func...], geom)
    """
    meshes = [f.mesh for f in fields]
    leaves = [f.leaves for f in fields]
    if order is None:
        order = max(f.max_order for f in fields) + 1
    if base_ids is None:
        base_ids = range(meshes[0].nbase)
    total = 0.0
    for base_id in base_ids:
        for eids, pts_base, wt, geom, _ in integration_regions(meshes, leaves, base_id, order):
            vals = [f.values(eid, pts_base) for f, eid in zip(fields, eids)]
            total += float(form(wt, vals, geom))
    return total


def _h1_density(wt, f):
    return np.sum(wt * (f.val ** 2 + f.dx ** 2 + f.dy ** 2))


def h1_norm(sln) -> float:
    """H1 范数"""
    return float(np.sqrt(integrate([sln], lambda wt, v, geom: _h1_density(wt, v[0]))))


def h1_error_parts(sln, ref) -> Tuple[float, float]:
    """(||sln - ref||^2, ||ref||^2)，两者都在联合网格上积分"""
    err = integrate([sln, ref], lambda wt, v, geom: _h1_density(wt, v[0] - v[1]))
    norm = integrate([sln, ref], lambda wt, v, geom: _h1_density(wt, v[1]))
    return err, norm


def h1_error(sln, ref) -> float:
    """sln 相对 ref 的 H1 相对误差 ||sln - ref|| / ||ref||"""
    err, norm = h1_error_parts(sln, ref)
    if norm <= 0.0:
        return float(np.sqrt(err))
    return float(np.sqrt(err / norm))
