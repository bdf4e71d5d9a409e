"""
有限元方法模块

提供 hp 自适应所需的有限元基础设施，包括：
- 带悬挂节点的四边形/三角形网格及其细化
- H1 层次（Lobatto）形函数
- 任意阶高斯积分
- H1 空间与自由度编号（含约束）
- 解场、弱形式装配与线性求解
"""

from .elements import *
from .quadrature import *
from .basis_functions import *
from .transformations import *
from .mesh import *
from .mesh_generation import *
from .dof_manager import *
from .solution import *
from .assembly import *
from .solvers import *

__version__ = "0.3.0"
__all__ = [
    # 单元
    "TRIANGLE",
    "QUAD",
    "Element",
    "RefinementType",
    "son_maps",

    # 积分与形函数
    "gauss_legendre_1d",
    "quad_points_weights",
    "triangle_points_weights",
    "points_weights",
    "H1Shapeset",
    "lobatto",
    "get_layout",

    # 几何变换
    "reference_map",
    "jacobian_det",
    "jacobian_inv",
    "dN_dx",

    # 网格
    "Mesh",
    "traverse_union",
    "rectangle_mesh",
    "square_mesh",
    "l_shape_mesh",

    # 空间
    "H1Space",
    "AssemblyList",

    # 解场
    "Func",
    "Geom",
    "Solution",
    "ExactSolution",
    "integrate",
    "h1_norm",
    "h1_error",
    "h1_error_parts",

    # 装配与求解
    "WeakForm",
    "assemble_system",
    "int_grad_u_grad_v",
    "int_u_v",
    "int_F_v",
    "h1_form",
    "l2_form",
    "laplace_form",
    "SolverConfig",
    "DirectSolver",
    "IterativeSolver",
    "create_solver",
    "solve_linear",
    "project_global",
]
