"""
收敛曲线与单元阶数图

ConvergenceGraph 记录 (自由度, 误差) 等数据点，保存为空白分隔的 .dat 表格，
也可以用 matplotlib 画成对数坐标的收敛曲线。
"""

import warnings
from typing import Dict, List, Optional, Tuple

import numpy as np

try:
    import matplotlib
    import matplotlib.pyplot as plt
    import matplotlib.patches as patches
    MATPLOTLIB_AVAILABLE = True
except ImportError:
    MATPLOTLIB_AVAILABLE = False
    warnings.warn("Matplotlib not available. Convergence plots will be limited.")


class ConvergenceGraph:
    """收敛曲线数据"""

    def __init__(self, title: str = '', x_label: str = 'Degrees of freedom',
                 y_label: str = 'Error [%]', log_x: bool = True, log_y: bool = True):
        self.title = title
        self.x_label = x_label
        self.y_label = y_label
        self.log_x = log_x
        self.log_y = log_y
        self.rows: Dict[str, List[Tuple[float, float]]] = {}

    def add_values(self, x: float, y: float, row: str = 'error'):
        """在曲线 row 上追加一个点"""
        self.rows.setdefault(row, []).append((float(x), float(y)))

    def get_values(self, row: str = 'error') -> np.ndarray:
        return np.array(self.rows.get(row, []), dtype=float).reshape(-1, 2)

    def save(self, filepath: str):
        """
        保存为 .dat 文本：每条曲线一个数据块，块之间空一行
        """
        with open(filepath, 'w', encoding='utf-8') as f:
            if self.title:
                f.write(f"# {self.title}\n")
            f.write(f"# {self.x_label}\t{self.y_label}\n")
            for k, (row, values) in enumerate(self.rows.items()):
                if k > 0:
                    f.write("\n\n")
                f.write(f"# {row}\n")
                for x, y in values:
                    f.write(f"{x:.16g}\t{y:.16g}\n")

    @classmethod
    def load(cls, filepath: str) -> 'ConvergenceGraph':
        """读取 save() 写出的文件"""
        graph = cls()
        row = 'error'
        header_lines = 0
        with open(filepath, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                if line.startswith('#'):
                    text = line[1:].strip()
                    header_lines += 1
                    if header_lines == 1 and '\t' not in text:
                        graph.title = text
                    elif '\t' in text:
                        graph.x_label, graph.y_label = text.split('\t', 1)
                    else:
                        row = text
                    continue
                x, y = line.split()
                graph.add_values(float(x), float(y), row)
        return graph

    def plot(self, filepath: Optional[str] = None, ax=None):
        """画收敛曲线；给出 filepath 时保存图片"""
        if not MATPLOTLIB_AVAILABLE:
            warnings.warn("Matplotlib not available, skipping convergence plot")
            return None
        if ax is None:
            fig, ax = plt.subplots(figsize=(8, 6))
        else:
            fig = ax.figure
        for row, values in self.rows.items():
            data = np.array(values)
            ax.plot(data[:, 0], data[:, 1], 'o-', label=row)
        if self.log_x:
            ax.set_xscale('log')
        if self.log_y:
            ax.set_yscale('log')
        ax.set_xlabel(self.x_label)
        ax.set_ylabel(self.y_label)
        if self.title:
            ax.set_title(self.title)
        ax.grid(True, which='both', alpha=0.3)
        if self.rows:
            ax.legend()
        if filepath:
            fig.savefig(filepath, dpi=100, bbox_inches='tight')
        return fig


def plot_orders(space, filepath: Optional[str] = None, ax=None, title: str = 'Polynomial orders'):
    """按多项式阶数给激活单元着色"""
    if not MATPLOTLIB_AVAILABLE:
        warnings.warn("Matplotlib not available, skipping order plot")
        return None
    if ax is None:
        fig, ax = plt.subplots(figsize=(7, 7))
    else:
        fig = ax.figure
    mesh = space.mesh
    cmap = matplotlib.colormaps['viridis']
    elements = list(mesh.active_elements())
    orders = [max(space.get_element_order(e.id)) for e in elements]
    top = max(orders, default=1)
    for el, p in zip(elements, orders):
        polygon = patches.Polygon(mesh.element_coords(el.id), closed=True,
                                  facecolor=cmap((p - 1) / max(top - 1, 1)), edgecolor='k', linewidth=0.5)
        ax.add_patch(polygon)
        cx, cy = mesh.element_center(el.id)
        ax.text(cx, cy, str(p), ha='center', va='center', fontsize=7)
    ax.autoscale_view()
    ax.set_aspect('equal')
    ax.set_title(title)
    if filepath:
        fig.savefig(filepath, dpi=100, bbox_inches='tight')
    return fig
