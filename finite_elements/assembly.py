"""
弱形式与全局矩阵装配

双线性形式的签名为 form(wt, u, v, geom)，线性形式为 form(wt, v, geom, ext)。
u, v 是 Func（.val, .dx, .dy），装配时 u 的形状为 (nu, 1, nq)，
v 为 (1, nv, nq)，因此形式内部用 np.sum(..., axis=-1) 即可同时算出整块单元矩阵。
"""

from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.sparse import coo_matrix, csr_matrix

from .solution import Func, shape_functions, integration_regions


# ---- 常用积分 ----
def int_grad_u_grad_v(wt, u, v):
    return np.sum(wt * (u.dx * v.dx + u.dy * v.dy), axis=-1)


def int_u_v(wt, u, v):
    return np.sum(wt * u.val * v.val, axis=-1)


def int_F_v(wt, F, v, geom):
    """F(x, y) 与测试函数的积分"""
    return np.sum(wt * F(geom.x, geom.y) * v.val, axis=-1)


def h1_form(wt, u, v, geom):
    """H1 内积"""
    return int_u_v(wt, u, v) + int_grad_u_grad_v(wt, u, v)


def l2_form(wt, u, v, geom):
    return int_u_v(wt, u, v)


def laplace_form(wt, u, v, geom):
    return int_grad_u_grad_v(wt, u, v)


class WeakForm:
    """neq 个分量的弱形式"""

    def __init__(self, neq: int = 1):
        if neq < 1:
            raise ValueError("方程个数至少为 1")
        self.neq = neq
        self.matrix_forms: List[Tuple[int, int, Callable]] = []
        self.vector_forms: List[Tuple[int, Callable, list]] = []
        self.extra_order = 2

    def _check(self, i):
        if not 0 <= i < self.neq:
            raise ValueError(f"分量编号 {i} 超出范围 [0, {self.neq})")

    def add_matrix_form(self, i: int, j: int, form: Callable, sym: bool = False):
        """第 i 个方程中关于第 j 个未知量的双线性形式；sym 时同时加入 (j, i)"""
        self._check(i)
        self._check(j)
        self.matrix_forms.append((i, j, form))
        if sym and i != j:
            self.matrix_forms.append((j, i, lambda wt, u, v, geom: form(wt, v, u, geom)))

    def add_vector_form(self, i: int, form: Callable, ext: Optional[Sequence] = None):
        """ext 为线性形式中用到的外部场（Solution/ExactSolution）"""
        self._check(i)
        self.vector_forms.append((i, form, list(ext or [])))


def _expand(f: Func, axis: int) -> Func:
    return Func(np.expand_dims(f.val, axis), np.expand_dims(f.dx, axis), np.expand_dims(f.dy, axis))


def assemble_system(spaces: Sequence, wf: WeakForm):
    """
    组装块状线性系统
    返回 (A: csr_matrix, b: ndarray, offsets)
    """
    if len(spaces) != wf.neq:
        raise ValueError(f"空间个数 {len(spaces)} 与方程个数 {wf.neq} 不一致")
    sizes = [s.get_num_dofs() for s in spaces]
    offsets = np.concatenate([[0], np.cumsum(sizes)]).astype(int)
    n = int(offsets[-1])
    rows, cols, vals = [], [], []
    rhs = np.zeros(n)
    nbase = spaces[0].mesh.nbase

    for i, j, form in wf.matrix_forms:
        sp_i, sp_j = spaces[i], spaces[j]
        meshes = [sp_i.mesh, sp_j.mesh]
        for base_id in range(nbase):
            for (ei, ej), pts_base, wt, geom, J_inv in _regions(meshes, base_id, spaces, (i, j), wf):
                al_i, al_j = sp_i.get_assembly_list(ei), sp_j.get_assembly_list(ej)
                if len(al_i.dofs) == 0 or len(al_j.dofs) == 0:
                    continue
                v = shape_functions(sp_i.shapeset, al_i, sp_i.mesh.elements[ei], pts_base, J_inv)
                u = shape_functions(sp_j.shapeset, al_j, sp_j.mesh.elements[ej], pts_base, J_inv)
                M = form(wt, _expand(u, 1), _expand(v, 0), geom)  # (nu, nv)
                block = al_i.coef.T @ M.T @ al_j.coef
                r, c = np.meshgrid(al_i.dofs + offsets[i], al_j.dofs + offsets[j], indexing='ij')
                rows.append(r.ravel())
                cols.append(c.ravel())
                vals.append(block.ravel())

    for i, form, ext in wf.vector_forms:
        sp_i = spaces[i]
        meshes = [sp_i.mesh] + [f.mesh for f in ext]
        leaves = [None] + [f.leaves for f in ext]
        for base_id in range(nbase):
            order = max([_max_order(sp_i, base_id)] + [f.max_order for f in ext]) + wf.extra_order
            for eids, pts_base, wt, geom, J_inv in integration_regions(meshes, leaves, base_id, order):
                al = sp_i.get_assembly_list(eids[0])
                if len(al.dofs) == 0:
                    continue
                v = shape_functions(sp_i.shapeset, al, sp_i.mesh.elements[eids[0]], pts_base, J_inv)
                ext_vals = [f.values(eid, pts_base) for f, eid in zip(ext, eids[1:])]
                f_loc = form(wt, v, geom, ext_vals)
                np.add.at(rhs, al.dofs + offsets[i], al.coef.T @ f_loc)

    if rows:
        A = coo_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=(n, n))
    else:
        A = coo_matrix((n, n))
    return csr_matrix(A), rhs, offsets


def _regions(meshes, base_id, spaces, pair, wf):
    i, j = pair
    order = max(_max_order(spaces[i], base_id), _max_order(spaces[j], base_id)) + wf.extra_order
    return integration_regions(meshes, None, base_id, order)


def _max_order(space, base_id):
    mesh = space.mesh
    stack, best = [base_id], 1
    while stack:
        el = mesh.elements[stack.pop()]
        if el.active:
            best = max(best, max(space.get_element_order(el.id)))
        else:
            stack.extend(el.sons)
    return best
