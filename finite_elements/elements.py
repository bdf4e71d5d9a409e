"""
单元类型、细化方式与单元记录

单元存放在网格的数组（arena）中，父子关系只保存整数ID。
"""
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple

import numpy as np

TRIANGLE = 'triangle'
QUAD = 'quad'

# 参考单元顶点
REFERENCE_VERTICES = {
    TRIANGLE: np.array([[-1.0, -1.0], [1.0, -1.0], [-1.0, 1.0]]),
    QUAD: np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]]),
}


class RefinementType(IntEnum):
    """单元分裂方式"""
    ISO = 0         # 四个子单元
    HORIZONTAL = 1  # 水平切开：下、上两个子单元（仅四边形）
    VERTICAL = 2    # 竖直切开：左、右两个子单元（仅四边形）


def son_maps(mode, reft):
    """
    子单元参考坐标到父单元参考坐标的仿射映射 [(A, b), ...]，
    顺序与 Mesh.refine_element 生成子单元的顺序一致。
    """
    half = 0.5 * np.eye(2)
    if mode == TRIANGLE:
        if reft != RefinementType.ISO:
            raise ValueError(f"三角形单元只支持各向同性细化: {reft!r}")
        return [
            (half, np.array([-0.5, -0.5])),
            (half, np.array([0.5, -0.5])),
            (half, np.array([-0.5, 0.5])),
            (-half, np.array([-0.5, -0.5])),
        ]
    if reft == RefinementType.ISO:
        return [(half, np.array(s)) for s in ([-0.5, -0.5], [0.5, -0.5], [0.5, 0.5], [-0.5, 0.5])]
    if reft == RefinementType.HORIZONTAL:
        A = np.diag([1.0, 0.5])
        return [(A, np.array([0.0, -0.5])), (A, np.array([0.0, 0.5]))]
    if reft == RefinementType.VERTICAL:
        A = np.diag([0.5, 1.0])
        return [(A, np.array([-0.5, 0.0])), (A, np.array([0.5, 0.0]))]
    raise ValueError(f"未知的细化方式: {reft!r}")


def inside_reference(mode, pts, tol=1e-10):
    """判断参考坐标点是否落在参考单元内"""
    pts = np.atleast_2d(pts)
    if mode == QUAD:
        return np.all(np.abs(pts) <= 1 + tol, axis=1)
    return (pts[:, 0] >= -1 - tol) & (pts[:, 1] >= -1 - tol) & (pts[:, 0] + pts[:, 1] <= tol)


def reference_centroid(mode):
    return REFERENCE_VERTICES[mode].mean(axis=0)


@dataclass
class Element:
    """网格单元"""
    id: int
    vertices: Tuple[int, ...]  # 逆时针顶点ID
    mode: str = QUAD
    level: int = 0  # 细化层数
    parent: Optional[int] = None
    sons: List[int] = field(default_factory=list)
    active: bool = True
    reft: Optional[RefinementType] = None  # 已分裂单元的分裂方式
    marker: int = 0  # 材料标记
    base: int = -1  # 所属初始网格单元ID
    # 本单元参考坐标 -> 初始单元参考坐标: xi_base = A @ xi + b
    A: np.ndarray = field(default_factory=lambda: np.eye(2))
    b: np.ndarray = field(default_factory=lambda: np.zeros(2))

    @property
    def n_vertices(self) -> int:
        return len(self.vertices)

    def edge(self, i: int) -> Tuple[int, int]:
        """第 i 条边（局部方向：顶点 i -> 顶点 i+1）"""
        return self.vertices[i], self.vertices[(i + 1) % len(self.vertices)]

    def edges(self):
        return [self.edge(i) for i in range(len(self.vertices))]

    def to_local(self, pts_base):
        """初始单元参考坐标 -> 本单元参考坐标"""
        return np.linalg.solve(self.A, (np.atleast_2d(pts_base) - self.b).T).T

    def to_base(self, pts):
        return np.atleast_2d(pts) @ self.A.T + self.b

    def copy(self) -> 'Element':
        return Element(
            id=self.id, vertices=tuple(self.vertices), mode=self.mode, level=self.level,
            parent=self.parent, sons=list(self.sons), active=self.active, reft=self.reft,
            marker=self.marker, base=self.base, A=self.A.copy(), b=self.b.copy(),
        )
