"""
高斯积分模块：参考四边形 [-1,1]^2 与参考三角形 (-1,-1),(1,-1),(-1,1)，任意阶
"""
from functools import lru_cache

import numpy as np
from numpy.polynomial.legendre import leggauss

from .elements import QUAD


@lru_cache(maxsize=None)
def gauss_legendre_1d(order):
    pts, wts = leggauss(order)
    pts.setflags(write=False)
    wts.setflags(write=False)
    return pts, wts


@lru_cache(maxsize=None)
def quad_points_weights(order):
    pts_1d, wts_1d = gauss_legendre_1d(order)
    pts = np.array([[x, y] for x in pts_1d for y in pts_1d])
    wts = np.array([wx * wy for wx in wts_1d for wy in wts_1d])
    return pts, wts


@lru_cache(maxsize=None)
def triangle_points_weights(order):
    """
    折叠（Duffy）高斯积分：把正方形 (u, v) 映射到参考三角形
    xi = (1+u)(1-v)/2 - 1, eta = v, Jacobi行列式 (1-v)/2
    """
    pts_u, wts_u = gauss_legendre_1d(order)
    pts_v, wts_v = gauss_legendre_1d(order + 1)
    pts = []
    wts = []
    for v, wv in zip(pts_v, wts_v):
        for u, wu in zip(pts_u, wts_u):
            pts.append([(1 + u) * (1 - v) / 2 - 1, v])
            wts.append(wu * wv * (1 - v) / 2)
    return np.array(pts), np.array(wts)


def points_weights(mode, degree):
    """能精确积分 degree 次多项式乘积（含几何因子余量）的积分点"""
    n = max(int(degree), 1) + 2
    if mode == QUAD:
        return quad_points_weights(n)
    return triangle_points_weights(n)
