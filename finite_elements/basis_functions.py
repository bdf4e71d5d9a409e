"""
H1 层次基函数（Lobatto 形函数）

每个单元的局部基函数依次为：顶点函数、边函数（k = 2..边阶数）、内部泡函数。
边函数在该边上的迹恰为 Lobatto 多项式 l_k(t)，t 沿局部方向从顶点 i 到顶点 i+1。
"""

from functools import lru_cache

import numpy as np
from numpy.polynomial import Legendre, Polynomial

from .elements import QUAD, TRIANGLE


# ---- 一维 Lobatto 多项式 ----
@lru_cache(maxsize=None)
def lobatto_poly(k):
    """l_0 = (1-x)/2, l_1 = (1+x)/2, l_k = (P_k - P_{k-2}) / sqrt(2(2k-1))"""
    if k == 0:
        return Polynomial([0.5, -0.5])
    if k == 1:
        return Polynomial([0.5, 0.5])
    diff = (Legendre.basis(k) - Legendre.basis(k - 2)).convert(kind=Polynomial)
    return diff / np.sqrt(2.0 * (2 * k - 1))


@lru_cache(maxsize=None)
def lobatto_deriv(k):
    return lobatto_poly(k).deriv()


@lru_cache(maxsize=None)
def kernel_poly(j):
    """核函数 phi_j = l_{j+2} / (l_0 l_1)"""
    quotient, _ = divmod(lobatto_poly(j + 2), Polynomial([0.25, 0.0, -0.25]))
    return quotient


@lru_cache(maxsize=None)
def kernel_deriv(j):
    return kernel_poly(j).deriv()


@lru_cache(maxsize=None)
def legendre_poly(n):
    return Legendre.basis(n).convert(kind=Polynomial)


@lru_cache(maxsize=None)
def legendre_deriv(n):
    return legendre_poly(n).deriv()


def lobatto(k, x):
    return lobatto_poly(k)(x)


# ---- 局部基函数布局 ----
@lru_cache(maxsize=None)
def get_layout(mode, order, edge_orders):
    """
    局部基函数布局
    order: (px, py)，三角形 px == py
    edge_orders: 每条边实际使用的阶数
    返回 (('v', i), ..., ('e', i, k), ..., ('b', i, j), ...)
    """
    n_vertices = 4 if mode == QUAD else 3
    layout = [('v', i) for i in range(n_vertices)]
    for i, q in enumerate(edge_orders):
        layout.extend(('e', i, k) for k in range(2, q + 1))
    px, py = order
    if mode == QUAD:
        layout.extend(('b', i, j) for i in range(2, px + 1) for j in range(2, py + 1))
    else:
        layout.extend(('b', a, n - a) for n in range(px - 2) for a in range(n + 1))
    return tuple(layout)


def full_edge_orders(mode, order):
    """不受相邻单元约束时的边阶数"""
    px, py = order
    if mode == QUAD:
        return (px, py, px, py)
    return (px, px, px)


def num_functions(mode, order, edge_orders=None):
    if edge_orders is None:
        edge_orders = full_edge_orders(mode, order)
    return len(get_layout(mode, tuple(order), tuple(edge_orders)))


class H1Shapeset:
    """H1 层次形函数集"""

    def get_layout(self, mode, order, edge_orders=None):
        if edge_orders is None:
            edge_orders = full_edge_orders(mode, order)
        return get_layout(mode, tuple(order), tuple(edge_orders))

    def evaluate(self, mode, order, edge_orders, pts):
        """
        在参考坐标点上计算基函数及其参考坐标导数
        返回 N, dN_dxi, dN_deta，形状 (n_pts, n_functions)
        """
        pts = np.atleast_2d(pts)
        layout = self.get_layout(mode, order, edge_orders)
        if mode == QUAD:
            return _evaluate_quad(layout, pts)
        if mode == TRIANGLE:
            return _evaluate_triangle(layout, pts)
        raise ValueError(f"不支持的单元类型: {mode}")


def _evaluate_quad(layout, pts):
    xi, eta = pts[:, 0], pts[:, 1]
    n = len(layout)
    N = np.empty((len(pts), n))
    dxi = np.empty_like(N)
    deta = np.empty_like(N)

    def tensor(col, kx, sx, ky, sy):
        # l_kx(sx * xi) * l_ky(sy * eta)
        fx, fy = lobatto_poly(kx)(sx * xi), lobatto_poly(ky)(sy * eta)
        N[:, col] = fx * fy
        dxi[:, col] = sx * lobatto_deriv(kx)(sx * xi) * fy
        deta[:, col] = fx * sy * lobatto_deriv(ky)(sy * eta)

    vertex_factors = ((0, 0), (1, 0), (1, 1), (0, 1))
    for col, item in enumerate(layout):
        if item[0] == 'v':
            kx, ky = vertex_factors[item[1]]
            tensor(col, kx, 1.0, ky, 1.0)
        elif item[0] == 'e':
            i, k = item[1], item[2]
            if i == 0:
                tensor(col, k, 1.0, 0, 1.0)
            elif i == 1:
                tensor(col, 1, 1.0, k, 1.0)
            elif i == 2:
                tensor(col, k, -1.0, 1, 1.0)
            else:
                tensor(col, 0, 1.0, k, -1.0)
        else:
            tensor(col, item[1], 1.0, item[2], 1.0)
    return N, dxi, deta


def _evaluate_triangle(layout, pts):
    xi, eta = pts[:, 0], pts[:, 1]
    lam = np.stack([-(xi + eta) / 2, (xi + 1) / 2, (eta + 1) / 2])
    dlam = np.array([[-0.5, -0.5], [0.5, 0.0], [0.0, 0.5]])
    n = len(layout)
    N = np.empty((len(pts), n))
    grad = np.empty((len(pts), n, 2))

    for col, item in enumerate(layout):
        if item[0] == 'v':
            i = item[1]
            N[:, col] = lam[i]
            grad[:, col, :] = dlam[i]
        elif item[0] == 'e':
            a, b, k = item[1], (item[1] + 1) % 3, item[2]
            s = lam[b] - lam[a]
            phi, dphi = kernel_poly(k - 2)(s), kernel_deriv(k - 2)(s)
            N[:, col] = lam[a] * lam[b] * phi
            grad[:, col, :] = (
                (lam[b] * phi)[:, None] * dlam[a]
                + (lam[a] * phi)[:, None] * dlam[b]
                + (lam[a] * lam[b] * dphi)[:, None] * (dlam[b] - dlam[a])
            )
        else:
            i, j = item[1], item[2]
            bub = lam[0] * lam[1] * lam[2]
            dbub = (
                (lam[1] * lam[2])[:, None] * dlam[0]
                + (lam[0] * lam[2])[:, None] * dlam[1]
                + (lam[0] * lam[1])[:, None] * dlam[2]
            )
            s, r = lam[1] - lam[0], 2 * lam[2] - 1
            ds, dr = dlam[1] - dlam[0], 2 * dlam[2]
            f = legendre_poly(i)(s) * legendre_poly(j)(r)
            df = (legendre_deriv(i)(s) * legendre_poly(j)(r))[:, None] * ds \
                + (legendre_poly(i)(s) * legendre_deriv(j)(r))[:, None] * dr
            N[:, col] = bub * f
            grad[:, col, :] = dbub * f[:, None] + bub[:, None] * df
    return N, grad[:, :, 0], grad[:, :, 1]
