"""
可视化模块
"""

from .convergence import ConvergenceGraph, plot_orders, MATPLOTLIB_AVAILABLE

__all__ = [
    'ConvergenceGraph',
    'plot_orders',
    'MATPLOTLIB_AVAILABLE',
]
