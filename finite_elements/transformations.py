"""
参考单元到物理单元的变换、Jacobi矩阵与物理坐标导数

直边单元：四边形使用双线性映射，三角形使用仿射映射。
子单元的几何总是通过初始单元的映射加上仿射子映射得到。
"""
import numpy as np

from .elements import QUAD


def reference_map(mode, coords, pts):
    """
    计算物理坐标和Jacobi矩阵
    coords: (n_vertices, 2) 顶点物理坐标
    pts: (n_pts, 2) 参考坐标
    返回 x: (n_pts, 2), J: (n_pts, 2, 2)，J[p, i, j] = dx_i / dxi_j
    """
    pts = np.atleast_2d(pts)
    xi, eta = pts[:, 0], pts[:, 1]
    if mode == QUAD:
        N = 0.25 * np.stack([(1 - xi) * (1 - eta), (1 + xi) * (1 - eta),
                             (1 + xi) * (1 + eta), (1 - xi) * (1 + eta)], axis=1)
        dN_dxi = 0.25 * np.stack([-(1 - eta), (1 - eta), (1 + eta), -(1 + eta)], axis=1)
        dN_deta = 0.25 * np.stack([-(1 - xi), -(1 + xi), (1 + xi), (1 - xi)], axis=1)
    else:
        N = np.stack([-(xi + eta) / 2, (xi + 1) / 2, (eta + 1) / 2], axis=1)
        dN_dxi = np.tile([-0.5, 0.5, 0.0], (len(pts), 1))
        dN_deta = np.tile([-0.5, 0.0, 0.5], (len(pts), 1))
    x = N @ coords
    J = np.empty((len(pts), 2, 2))
    J[:, :, 0] = dN_dxi @ coords
    J[:, :, 1] = dN_deta @ coords
    return x, J


def jacobian_det(J):
    """Jacobi行列式"""
    return np.linalg.det(J)


def jacobian_inv(J):
    """Jacobi逆矩阵"""
    return np.linalg.inv(J)


def dN_dx(dN_dxi, dN_deta, J_inv, A=None):
    """
    基函数对物理坐标的导数
    dN_dxi, dN_deta: (n_pts, n_functions) 对单元自身参考坐标的导数
    J_inv: (n_pts, 2, 2) 初始单元映射的Jacobi逆矩阵
    A: 单元参考坐标 -> 初始单元参考坐标的线性部分
    返回 dN/dx, dN/dy
    """
    M = np.transpose(J_inv, (0, 2, 1))
    if A is not None:
        M = M @ np.linalg.inv(A).T
    dx = M[:, 0, 0][:, None] * dN_dxi + M[:, 0, 1][:, None] * dN_deta
    dy = M[:, 1, 0][:, None] * dN_dxi + M[:, 1, 1][:, None] * dN_deta
    return dx, dy
