"""
线性求解器与全局投影

自适应循环只需要两件事：对给定空间重新求解线性系统，
以及把参考解投影到粗空间。
"""

import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.linalg import LinearOperator, bicgstab, cg, gmres, spilu, splu, spsolve

from .assembly import WeakForm, assemble_system, h1_form, l2_form
from .solution import Solution


@dataclass
class SolverConfig:
    """求解器配置"""
    solver_type: str = "direct"  # 'direct', 'iterative'
    method: str = "lu"  # 'lu', 'spsolve', 'cg', 'gmres', 'bicgstab'
    tolerance: float = 1e-10
    max_iterations: int = 5000
    preconditioner: str = "jacobi"  # 'ilu', 'jacobi', 'none'
    verbose: bool = False


class LinearSolver(ABC):
    """线性求解器抽象基类"""

    @abstractmethod
    def solve(self, A: csr_matrix, b: np.ndarray) -> np.ndarray:
        """求解线性系统 Ax = b"""
        pass

    @abstractmethod
    def setup(self, A: csr_matrix):
        """设置求解器（分解或预处理器）"""
        pass


class DirectSolver(LinearSolver):
    """直接求解器"""

    def __init__(self, config: SolverConfig = None):
        self.config = config or SolverConfig(solver_type="direct")
        self.factorized = None

    def setup(self, A: csr_matrix):
        if self.config.method == "lu":
            self.factorized = splu(A.tocsc())
        elif self.config.method != "spsolve":
            raise ValueError(f"不支持的直接求解方法: {self.config.method}")

    def solve(self, A: csr_matrix, b: np.ndarray) -> np.ndarray:
        if A.shape[0] == 0:
            return np.zeros(0)
        self.setup(A)
        if self.factorized is not None:
            return self.factorized.solve(b)
        return spsolve(A.tocsc(), b)


class IterativeSolver(LinearSolver):
    """迭代求解器"""

    def __init__(self, config: SolverConfig = None):
        self.config = config or SolverConfig(solver_type="iterative", method="cg")
        self.preconditioner = None

    def setup(self, A: csr_matrix):
        """设置预处理器"""
        n = A.shape[0]
        if self.config.preconditioner == "ilu":
            ilu = spilu(A.tocsc())
            self.preconditioner = LinearOperator((n, n), matvec=ilu.solve)
        elif self.config.preconditioner == "jacobi":
            diag = A.diagonal().copy()
            diag[diag == 0] = 1.0
            self.preconditioner = LinearOperator((n, n), matvec=lambda x: x / diag)
        else:
            self.preconditioner = None

    def solve(self, A: csr_matrix, b: np.ndarray) -> np.ndarray:
        if A.shape[0] == 0:
            return np.zeros(0)
        self.setup(A)
        methods = {"cg": cg, "gmres": gmres, "bicgstab": bicgstab}
        if self.config.method not in methods:
            raise ValueError(f"不支持的迭代方法: {self.config.method}")
        x, info = methods[self.config.method](
            A, b, rtol=self.config.tolerance, maxiter=self.config.max_iterations, M=self.preconditioner
        )
        if info > 0:
            warnings.warn(f"Iterative solver did not converge in {info} iterations", RuntimeWarning)
        elif info < 0:
            raise RuntimeError(f"迭代求解器失败: info = {info}")
        if self.config.verbose:
            print(f"{self.config.method}: residual = {np.linalg.norm(b - A @ x):.2e}")
        return x


def create_solver(config: Optional[SolverConfig] = None) -> LinearSolver:
    """根据配置创建求解器"""
    config = config or SolverConfig()
    if config.solver_type == "direct":
        return DirectSolver(config)
    if config.solver_type == "iterative":
        return IterativeSolver(config)
    raise ValueError(f"不支持的求解器类型: {config.solver_type}")


def solve_linear(spaces: Union[Sequence, object], wf: WeakForm,
                 config: Optional[SolverConfig] = None) -> List[Solution]:
    """在给定空间上组装并求解，返回每个分量的解"""
    if not isinstance(spaces, (list, tuple)):
        spaces = [spaces]
    A, b, offsets = assemble_system(spaces, wf)
    x = create_solver(config).solve(A, b)
    if not np.all(np.isfinite(x)):
        raise RuntimeError("线性求解得到非有限值，请检查边界条件")
    return [Solution(sp, x[offsets[i]:offsets[i + 1]]) for i, sp in enumerate(spaces)]


def project_global(spaces: Sequence, sources: Sequence, norm: str = "h1",
                   config: Optional[SolverConfig] = None) -> List[Solution]:
    """
    把 sources 中的场按 H1 或 L2 范数投影到 spaces 上

    Parameters:
        spaces: 目标空间（已编号）
        sources: 与 spaces 一一对应的 Solution/ExactSolution
        norm: 'h1' 或 'l2'
    """
    if len(spaces) != len(sources):
        raise ValueError("spaces 与 sources 的个数必须相同")
    if norm not in ("h1", "l2"):
        raise ValueError(f"不支持的投影范数: {norm}")
    form = h1_form if norm == "h1" else l2_form
    wf = WeakForm(len(spaces))
    for i, src in enumerate(sources):
        wf.add_matrix_form(i, i, form)
        wf.add_vector_form(i, lambda wt, v, geom, ext: form(wt, ext[0], v, geom), ext=[src])
    return solve_linear(list(spaces), wf, config)
