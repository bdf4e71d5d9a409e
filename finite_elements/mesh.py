"""
二维网格：单元数组、二分细化与悬挂节点维护

单元按整数ID存放在数组中，已分裂的单元保留在数组里但不再激活。
边由排序后的顶点对 (a, b) 表示；边被二分时在 _midpoints 中登记中点，
在 _seg_parent 中登记子边到父边的关系。一条激活单元的边若已被二分，
说明另一侧更细，中点就是悬挂节点。
"""

from typing import Dict, List, Optional, Tuple, Iterator, Sequence

import numpy as np

from core.config import MAX_LEVEL
from core.exceptions import InvalidStateError, ResourceExhaustedError
from .elements import (
    Element, RefinementType, QUAD, TRIANGLE, son_maps, inside_reference, reference_centroid,
)


def seg(a: int, b: int) -> Tuple[int, int]:
    """无向边的键"""
    return (a, b) if a < b else (b, a)


class Mesh:
    """支持 h 细化和悬挂节点的二维网格"""

    def __init__(self):
        self.vertices: List[np.ndarray] = []
        self.elements: List[Element] = []
        self.boundary: Dict[Tuple[int, int], int] = {}  # 边界边 -> 边界标记
        self._midpoints: Dict[Tuple[int, int], int] = {}
        self._mid_of: Dict[int, Tuple[int, int]] = {}
        self._seg_parent: Dict[Tuple[int, int], Tuple[int, int]] = {}
        self.nbase = 0
        self.version = 0  # 每次拓扑变化加一

    # ---- 构造 ----
    @classmethod
    def from_arrays(cls, vertices, elements, boundary_markers=None, element_markers=None) -> 'Mesh':
        """
        由顶点坐标和单元顶点表构造初始网格
        vertices: (n, 2)
        elements: 每个单元 3 个（三角形）或 4 个（四边形）逆时针顶点
        boundary_markers: {(a, b): marker} 或 callable(a, b, xa, xb) -> marker，缺省为 1
        """
        mesh = cls()
        for v in np.asarray(vertices, dtype=float):
            mesh.vertices.append(np.array(v))
        counts = {}
        for nodes in elements:
            nodes = tuple(int(n) for n in nodes)
            if len(nodes) not in (3, 4):
                raise ValueError(f"单元必须有3个或4个顶点: {nodes}")
            mode = QUAD if len(nodes) == 4 else TRIANGLE
            eid = len(mesh.elements)
            marker = 0 if element_markers is None else int(element_markers[eid])
            el = Element(id=eid, vertices=nodes, mode=mode, base=eid, marker=marker)
            if mesh._signed_area(el) <= 0:
                raise ValueError(f"单元 {eid} 的顶点不是逆时针顺序")
            mesh.elements.append(el)
            for a, b in el.edges():
                counts[seg(a, b)] = counts.get(seg(a, b), 0) + 1
        for key, n in counts.items():
            if n == 1:
                if boundary_markers is None:
                    marker = 1
                elif callable(boundary_markers):
                    marker = boundary_markers(key[0], key[1], mesh.vertices[key[0]], mesh.vertices[key[1]])
                else:
                    marker = boundary_markers.get(key, boundary_markers.get(key[::-1], 1))
                mesh.boundary[key] = int(marker)
        mesh.nbase = len(mesh.elements)
        return mesh

    def copy(self) -> 'Mesh':
        """结构复制（单元ID保持不变）"""
        other = Mesh()
        other.vertices = [v.copy() for v in self.vertices]
        other.elements = [e.copy() for e in self.elements]
        other.boundary = dict(self.boundary)
        other._midpoints = dict(self._midpoints)
        other._mid_of = dict(self._mid_of)
        other._seg_parent = dict(self._seg_parent)
        other.nbase = self.nbase
        return other

    # ---- 查询 ----
    def get_element(self, eid: int) -> Element:
        if not 0 <= eid < len(self.elements):
            raise InvalidStateError(f"单元 {eid} 不存在")
        return self.elements[eid]

    def active_elements(self) -> Iterator[Element]:
        return (e for e in self.elements if e.active)

    def get_num_active_elements(self) -> int:
        return sum(1 for e in self.elements if e.active)

    def get_max_level(self) -> int:
        return max((e.level for e in self.active_elements()), default=0)

    def element_coords(self, eid: int) -> np.ndarray:
        return np.array([self.vertices[v] for v in self.get_element(eid).vertices])

    def base_coords(self, eid: int) -> np.ndarray:
        """元素所属初始单元的顶点坐标（几何映射由它决定）"""
        return self.element_coords(self.get_element(eid).base)

    def element_center(self, eid: int) -> np.ndarray:
        return self.element_coords(eid).mean(axis=0)

    def element_area(self, eid: int) -> float:
        return abs(self._signed_area(self.get_element(eid)))

    def _signed_area(self, el: Element) -> float:
        pts = np.array([self.vertices[v] for v in el.vertices])
        x, y = pts[:, 0], pts[:, 1]
        return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))

    def get_midpoint(self, a: int, b: int) -> Optional[int]:
        return self._midpoints.get(seg(a, b))

    def segment_parent(self, key: Tuple[int, int]) -> Optional[Tuple[int, int]]:
        return self._seg_parent.get(key)

    def midpoint_of(self, v: int) -> Optional[Tuple[int, int]]:
        """顶点 v 若是某条边的中点，返回该边"""
        return self._mid_of.get(v)

    # ---- 细化 ----
    def _midpoint(self, a: int, b: int) -> int:
        key = seg(a, b)
        m = self._midpoints.get(key)
        if m is not None:
            return m
        m = len(self.vertices)
        self.vertices.append(0.5 * (self.vertices[a] + self.vertices[b]))
        self._midpoints[key] = m
        self._mid_of[m] = key
        for half in (seg(key[0], m), seg(m, key[1])):
            self._seg_parent[half] = key
            if key in self.boundary:
                self.boundary[half] = self.boundary[key]
        return m

    def _add_vertex(self, xy) -> int:
        self.vertices.append(np.asarray(xy, dtype=float))
        return len(self.vertices) - 1

    def refine_element(self, eid: int, reft: RefinementType = RefinementType.ISO) -> List[int]:
        """把一个激活单元分裂为子单元，返回子单元ID"""
        el = self.get_element(eid)
        if not el.active:
            raise InvalidStateError(f"单元 {eid} 已经被细化，不能再次细化")
        reft = RefinementType(reft)
        if el.mode == TRIANGLE and reft != RefinementType.ISO:
            raise ValueError(f"三角形单元 {eid} 只支持各向同性细化")
        if el.level + 1 > MAX_LEVEL:
            raise ResourceExhaustedError(f"单元 {eid} 的细化层数超过上限 {MAX_LEVEL}")

        v = el.vertices
        if el.mode == TRIANGLE:
            m0, m1, m2 = self._midpoint(v[0], v[1]), self._midpoint(v[1], v[2]), self._midpoint(v[2], v[0])
            sons = [(v[0], m0, m2), (m0, v[1], m1), (m2, m1, v[2]), (m1, m2, m0)]
        elif reft == RefinementType.ISO:
            m0, m1 = self._midpoint(v[0], v[1]), self._midpoint(v[1], v[2])
            m2, m3 = self._midpoint(v[2], v[3]), self._midpoint(v[3], v[0])
            c = self._add_vertex(np.mean([self.vertices[i] for i in v], axis=0))
            sons = [(v[0], m0, c, m3), (m0, v[1], m1, c), (c, m1, v[2], m2), (m3, c, m2, v[3])]
        elif reft == RefinementType.HORIZONTAL:
            m1, m3 = self._midpoint(v[1], v[2]), self._midpoint(v[3], v[0])
            sons = [(v[0], v[1], m1, m3), (m3, m1, v[2], v[3])]
        else:
            m0, m2 = self._midpoint(v[0], v[1]), self._midpoint(v[2], v[3])
            sons = [(v[0], m0, m2, v[3]), (m0, v[1], v[2], m2)]

        ids = []
        for nodes, (A, b) in zip(sons, son_maps(el.mode, reft)):
            son = Element(
                id=len(self.elements), vertices=nodes, mode=el.mode, level=el.level + 1,
                parent=el.id, marker=el.marker, base=el.base,
                A=el.A @ A, b=el.A @ b + el.b,
            )
            self.elements.append(son)
            ids.append(son.id)
        el.sons = ids
        el.active = False
        el.reft = reft
        self.version += 1
        return ids

    def refine_all_elements(self) -> List[int]:
        """所有激活单元各向同性细化一次"""
        active = [e.id for e in self.active_elements()]
        for eid in active:
            self.check_refinable(eid)
        sons = []
        for eid in active:
            sons.extend(self.refine_element(eid, RefinementType.ISO))
        return sons

    def check_refinable(self, eid: int):
        """在改动网格之前检查单元能否再细化"""
        el = self.get_element(eid)
        if not el.active:
            raise InvalidStateError(f"单元 {eid} 已经被细化，不能再次细化")
        if el.level + 1 > MAX_LEVEL:
            raise ResourceExhaustedError(f"单元 {eid} 的细化层数超过上限 {MAX_LEVEL}")

    # ---- 悬挂节点 ----
    def edge_irregularity(self, a: int, b: int) -> int:
        """激活单元的边 (a, b) 上另一侧的二分层数（0 表示协调）"""
        m = self._midpoints.get(seg(a, b))
        if m is None:
            return 0
        return 1 + max(self.edge_irregularity(a, m), self.edge_irregularity(m, b))

    def max_irregularity(self) -> int:
        return max((self.edge_irregularity(a, b)
                    for e in self.active_elements() for a, b in e.edges()), default=0)

    def enforce_regularity(self, max_level: int) -> List[int]:
        """
        强制细化较粗的邻居，使每条边上的悬挂层数不超过 max_level。
        max_level = -1 时不做任何处理。返回被强制细化的单元ID。

        四边形只有左右边（或只有上下边）超限时做对应的各向异性分裂，
        否则各向同性分裂。
        """
        if max_level < 0:
            return []
        forced = []
        changed = True
        while changed:
            changed = False
            for el in [e for e in self.elements if e.active]:
                over = {i for i, (a, b) in enumerate(el.edges()) if self.edge_irregularity(a, b) > max_level}
                if not over:
                    continue
                self.refine_element(el.id, self._forced_split(el, over))
                forced.append(el.id)
                changed = True
        return forced

    @staticmethod
    def _forced_split(el: Element, over) -> RefinementType:
        if el.mode == QUAD:
            # 局部边 0 下, 1 右, 2 上, 3 左
            if over <= {1, 3}:
                return RefinementType.HORIZONTAL
            if over <= {0, 2}:
                return RefinementType.VERTICAL
        return RefinementType.ISO

    def segment_users(self) -> Dict[Tuple[int, int], List[Tuple[int, int]]]:
        """激活单元的边 -> [(单元ID, 局部边号), ...]"""
        users: Dict[Tuple[int, int], List[Tuple[int, int]]] = {}
        for el in self.active_elements():
            for i, (a, b) in enumerate(el.edges()):
                users.setdefault(seg(a, b), []).append((el.id, i))
        return users

    def constraining_segment(self, key, users) -> Optional[Tuple[int, int]]:
        """沿父边向上查找被某个激活单元整条使用的边（包含 key 本身）"""
        while key is not None:
            if key in users:
                return key
            key = self._seg_parent.get(key)
        return None

    def hanging_vertices(self) -> Dict[int, Tuple[int, int]]:
        """悬挂顶点 -> 约束它的粗边"""
        users = self.segment_users()
        hanging = {}
        for el in self.active_elements():
            for v in el.vertices:
                key = self._mid_of.get(v)
                if key is None or v in hanging:
                    continue
                coarse = self.constraining_segment(key, users)
                if coarse is not None:
                    hanging[v] = coarse
        return hanging

    def vertex_param(self, key: Tuple[int, int], v: int) -> float:
        """顶点 v 在边 key 上的参数位置（key[0] -> -1, key[1] -> +1）"""
        if v == key[0]:
            return -1.0
        if v == key[1]:
            return 1.0
        parent = self._mid_of.get(v)
        if parent is None:
            raise InvalidStateError(f"顶点 {v} 不在边 {key} 上")
        return 0.5 * (self.vertex_param(key, parent[0]) + self.vertex_param(key, parent[1]))

    # ---- 跨网格定位 ----
    def compatible_with(self, other: 'Mesh') -> bool:
        """两个网格由同一初始网格细化而来"""
        if self.nbase != other.nbase:
            return False
        return all(np.allclose(self.element_coords(i), other.element_coords(i)) for i in range(self.nbase))

    def locate(self, base_id: int, pt, leaves=None) -> Tuple[int, np.ndarray]:
        """
        在初始单元 base_id 的参考坐标 pt 处查找叶单元
        返回 (单元ID, 该单元参考坐标)
        """
        pt = np.asarray(pt, dtype=float)
        el = self.get_element(base_id)
        while not _is_leaf(el, leaves):
            best, best_violation = None, np.inf
            for sid in el.sons:
                son = self.elements[sid]
                local = son.to_local(pt)[0]
                violation = _violation(son.mode, local)
                if violation < best_violation:
                    best, best_violation = son, violation
            el = best
        return el.id, el.to_local(pt)[0]

    def traverse_union(self, others: Sequence['Mesh'], base_id: int, leaves=None, root: Optional[int] = None):
        """与 others 中的网格联合遍历初始单元 base_id，见 traverse_union"""
        return traverse_union([self] + list(others), base_id, leaves, root)


def _is_leaf(el: Element, leaves) -> bool:
    if leaves is None:
        return el.active
    return el.id in leaves or not el.sons


def _violation(mode, local) -> float:
    if mode == QUAD:
        return max(0.0, float(np.max(np.abs(local))) - 1.0)
    return max(0.0, -1.0 - local[0], -1.0 - local[1], local[0] + local[1])


def _rect(el: Element):
    return (el.b[0] - el.A[0, 0], el.b[0] + el.A[0, 0], el.b[1] - el.A[1, 1], el.b[1] + el.A[1, 1])


def traverse_union(meshes: Sequence[Mesh], base_id: int, leaves=None, root: Optional[int] = None):
    """
    对同源网格的初始单元 base_id 做联合遍历。
    生成 (单元ID元组, A, b)：区域是各网格叶单元的交集，
    (A, b) 把参考单元映射到该交集区域（初始单元参考坐标）。
    leaves: 每个网格可选的叶单元集合（None 表示当前激活单元）
    root: 第一个网格中的单元ID，只遍历它覆盖的区域
    """
    if leaves is None:
        leaves = [None] * len(meshes)
    start = meshes[0].get_element(base_id if root is None else root)
    if start.base != base_id:
        raise ValueError(f"单元 {start.id} 不属于初始单元 {base_id}")
    nodes = [start] + [_descend(m, m.get_element(base_id), start, leaves[k])
                       for k, m in enumerate(meshes[1:], 1)]
    if start.mode == QUAD:
        yield from _traverse_quad(meshes, nodes, _rect(start), leaves)
    else:
        yield from _traverse_triangle(meshes, nodes, start, leaves)


def _contains(outer: Element, inner: Element) -> bool:
    if outer.mode == QUAD:
        ox0, ox1, oy0, oy1 = _rect(outer)
        ix0, ix1, iy0, iy1 = _rect(inner)
        tol = 1e-12
        return ox0 <= ix0 + tol and ix1 <= ox1 + tol and oy0 <= iy0 + tol and iy1 <= oy1 + tol
    centroid = reference_centroid(TRIANGLE)
    return outer.level <= inner.level and inside_reference(TRIANGLE, outer.to_local(inner.to_base(centroid)))[0]


def _descend(mesh: Mesh, el: Element, target: Element, leaves) -> Element:
    """沿细化树向下找到包含 target 区域的最深单元"""
    while not _is_leaf(el, leaves):
        nxt = next((s for s in (mesh.elements[i] for i in el.sons) if _contains(s, target)), None)
        if nxt is None:
            break
        el = nxt
    return el


def _traverse_quad(meshes, nodes, rect, leaves):
    k = next((i for i, n in enumerate(nodes) if not _is_leaf(n, leaves[i])), None)
    if k is None:
        x0, x1, y0, y1 = rect
        A = np.diag([(x1 - x0) / 2, (y1 - y0) / 2])
        b = np.array([(x0 + x1) / 2, (y0 + y1) / 2])
        yield tuple(n.id for n in nodes), A, b
        return
    for sid in nodes[k].sons:
        son = meshes[k].elements[sid]
        sx0, sx1, sy0, sy1 = _rect(son)
        r = (max(rect[0], sx0), min(rect[1], sx1), max(rect[2], sy0), min(rect[3], sy1))
        if r[1] - r[0] > 1e-12 and r[3] - r[2] > 1e-12:
            new = list(nodes)
            new[k] = son
            yield from _traverse_quad(meshes, new, r, leaves)


def _traverse_triangle(meshes, nodes, region, leaves):
    k = next((i for i, n in enumerate(nodes) if not _is_leaf(n, leaves[i])), None)
    if k is None:
        yield tuple(n.id for n in nodes), region.A, region.b
        return
    centroid = reference_centroid(TRIANGLE)
    for sid in nodes[k].sons:
        son = meshes[k].elements[sid]
        # 同一三角形细分树中的单元要么嵌套要么不相交
        if son.level > region.level:
            overlap = inside_reference(TRIANGLE, region.to_local(son.to_base(centroid)))[0]
        else:
            overlap = inside_reference(TRIANGLE, son.to_local(region.to_base(centroid)))[0]
        if overlap:
            new = list(nodes)
            new[k] = son
            yield from _traverse_triangle(meshes, new, son if son.level >= region.level else region, leaves)
