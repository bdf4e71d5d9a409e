"""
结构化初始网格生成

边界标记：1 下边，2 右边，3 上边，4 左边（L 形区域的凹角边为 5）
"""

import numpy as np

from .mesh import Mesh

BOTTOM, RIGHT, TOP, LEFT, INNER = 1, 2, 3, 4, 5


def _side_marker(x0, x1, y0, y1, tol=1e-12):
    def marker(a, b, pa, pb):
        if abs(pa[1] - y0) < tol and abs(pb[1] - y0) < tol:
            return BOTTOM
        if abs(pa[0] - x1) < tol and abs(pb[0] - x1) < tol:
            return RIGHT
        if abs(pa[1] - y1) < tol and abs(pb[1] - y1) < tol:
            return TOP
        if abs(pa[0] - x0) < tol and abs(pb[0] - x0) < tol:
            return LEFT
        return INNER
    return marker


def rectangle_mesh(nx: int = 1, ny: int = 1, x0: float = 0.0, x1: float = 1.0,
                   y0: float = 0.0, y1: float = 1.0, element_type: str = 'quad') -> Mesh:
    """
    矩形区域的结构化网格
    element_type='triangle' 时每个矩形沿对角线切成两个三角形
    """
    if nx < 1 or ny < 1:
        raise ValueError("nx, ny 必须为正整数")
    if element_type not in ('quad', 'triangle'):
        raise ValueError(f"不支持的单元类型: {element_type}")
    xs = np.linspace(x0, x1, nx + 1)
    ys = np.linspace(y0, y1, ny + 1)
    vertices = np.array([[x, y] for y in ys for x in xs])

    def vid(i, j):
        return j * (nx + 1) + i

    elements = []
    for j in range(ny):
        for i in range(nx):
            a, b, c, d = vid(i, j), vid(i + 1, j), vid(i + 1, j + 1), vid(i, j + 1)
            if element_type == 'quad':
                elements.append((a, b, c, d))
            else:
                elements.append((a, b, d))
                elements.append((c, d, b))
    return Mesh.from_arrays(vertices, elements, _side_marker(x0, x1, y0, y1))


def square_mesh(n: int = 1, element_type: str = 'quad') -> Mesh:
    """单位正方形 [0,1]^2"""
    return rectangle_mesh(n, n, element_type=element_type)


def l_shape_mesh(element_type: str = 'quad') -> Mesh:
    """
    L 形区域 [-1,1]^2 \\ (0,1)x(-1,0)，三个单位正方形单元
    """
    vertices = np.array([
        [-1.0, -1.0], [0.0, -1.0], [0.0, 0.0], [-1.0, 0.0],
        [1.0, 0.0], [1.0, 1.0], [0.0, 1.0], [-1.0, 1.0],
    ])
    quads = [(0, 1, 2, 3), (3, 2, 6, 7), (2, 4, 5, 6)]
    if element_type == 'quad':
        elements = quads
    elif element_type == 'triangle':
        elements = []
        for a, b, c, d in quads:
            elements.extend([(a, b, d), (c, d, b)])
    else:
        raise ValueError(f"不支持的单元类型: {element_type}")
    return Mesh.from_arrays(vertices, elements, _side_marker(-1.0, 1.0, -1.0, 1.0))
