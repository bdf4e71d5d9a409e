"""
hp自适应演示脚本 - Poisson方程 -Δu = f

这个脚本演示了以下功能：
1. 单位正方形上带内部峰值的光滑解（已知精确解，输出精确误差）
2. L形区域上凹角奇异解的 h / p / hp 自适应对比
3. 两个分量共享网格与独立网格（multimesh）的自适应
4. 收敛曲线保存（.dat）和绘图
"""

import sys
import warnings

import numpy as np

from core import AdaptivityConfig
from finite_elements import (
    WeakForm, ExactSolution, laplace_form, int_F_v, square_mesh, l_shape_mesh,
)
from adaptivity import AdaptivityLoop, CandList, H1ProjBasedSelector
from visualization import ConvergenceGraph, plot_orders

warnings.filterwarnings('ignore', category=UserWarning)


# 精确解 u = X(x) X(y)，X(t) = t(1-t) exp(-a (t-c)^2)
ALPHA, CENTER = 50.0, 0.3


def _profile(t):
    e = np.exp(-ALPHA * (t - CENTER) ** 2)
    de = -2 * ALPHA * (t - CENTER) * e
    dde = (4 * ALPHA ** 2 * (t - CENTER) ** 2 - 2 * ALPHA) * e
    p, dp, ddp = t - t ** 2, 1 - 2 * t, -2.0
    return p * e, dp * e + p * de, ddp * e + 2 * dp * de + p * dde


def peak_exact(x, y):
    X, dX, _ = _profile(x)
    Y, dY, _ = _profile(y)
    return X * Y, dX * Y, X * dY


def peak_rhs(x, y):
    X, _, ddX = _profile(x)
    Y, _, ddY = _profile(y)
    return -(ddX * Y + X * ddY)


def poisson_form(rhs, neq=1):
    wf = WeakForm(neq)
    for i in range(neq):
        wf.add_matrix_form(i, i, laplace_form)
        wf.add_vector_form(i, lambda wt, v, geom, ext: int_F_v(wt, rhs, v, geom))
    return wf


def report(record):
    exact = "" if record.err_exact is None else f", err_exact = {record.err_exact:.4f}%"
    print(f"  🔁 迭代 {record.iteration}: ndof = {record.ndof}, ref_ndof = {record.ref_ndof}, "
          f"err_est = {record.err_est:.4f}%{exact}, 细化单元 = {record.n_refined}")


def demo_peak_problem():
    """单位正方形上的峰值解"""
    print("🎯 峰值问题（已知精确解）")
    print("=" * 50)
    mesh = square_mesh(2)
    config = AdaptivityConfig(p_init=2, init_ref_num=1, threshold=0.3, strategy=0,
                              cand_list='HP_ANISO', err_stop=1.0, ndof_stop=3000, max_iterations=12)
    loop = AdaptivityLoop.from_mesh(mesh, poisson_form(peak_rhs), config,
                                    essential_markers=(1, 2, 3, 4),
                                    exact=ExactSolution(mesh, peak_exact, order=8))
    graph_est = ConvergenceGraph("Error convergence", "Degrees of freedom", "Error [%]")
    loop.add_callback('step_completed', report)
    loop.add_callback('step_completed', lambda r: graph_est.add_values(r.ndof, r.err_est, 'error_estimate'))
    loop.add_callback('step_completed', lambda r: graph_est.add_values(r.ndof, r.err_exact, 'error_exact'))
    result = loop.run()
    print(f"✅ 结束原因: {result.reason}, 最终误差 {result.final_error:.4f}%")
    graph_est.save("conv_dof_peak.dat")
    print("💾 收敛数据已保存: conv_dof_peak.dat")
    return result, graph_est


def demo_l_shape(kind='hp'):
    """L形区域凹角奇异性：f = 1, 全边界齐次 Dirichlet"""
    print(f"📐 L形区域 ({kind} 自适应)")
    print("=" * 50)
    config = AdaptivityConfig(p_init=2 if kind != 'h' else 1, threshold=0.3, strategy=0,
                              cand_list=CandList.from_flags(kind, iso_only=False).value,
                              mesh_regularity=-1, err_stop=2.0, ndof_stop=2000, max_iterations=10)
    loop = AdaptivityLoop.from_mesh(l_shape_mesh(), poisson_form(lambda x, y: np.ones_like(x)), config,
                                    essential_markers=(1, 2, 3, 4, 5))
    graph = ConvergenceGraph(f"L-shape, {kind}")
    loop.add_callback('step_completed', report)
    loop.add_callback('step_completed', lambda r: graph.add_values(r.ndof, r.err_est, kind))
    result = loop.run()
    print(f"✅ 结束原因: {result.reason}, 自由度 {result.records[-1].ndof}")
    return result, graph


def demo_multimesh():
    """两个独立的 Poisson 分量，分别使用共享网格和独立网格"""
    print("🧩 多分量自适应：共享网格 vs 独立网格")
    print("=" * 50)
    rhs = lambda x, y: np.ones_like(x)
    for multi in (False, True):
        config = AdaptivityConfig(p_init=1, multi=multi, threshold=0.3, strategy=1,
                                  cand_list='HP_ISO', err_stop=3.0, ndof_stop=1500, max_iterations=6)
        loop = AdaptivityLoop.from_mesh(square_mesh(2), poisson_form(rhs, neq=2), config,
                                        essential_markers=(1, 2, 3, 4))
        loop.add_callback('step_completed', report)
        result = loop.run()
        label = "独立网格" if multi else "共享网格"
        print(f"  {label}: {result.reason}, 每个分量的自由度 {[sp.get_num_dofs() for sp in result.spaces]}")


def main():
    print("🚀 hp自适应有限元演示")
    print("=" * 60)
    result, graph = demo_peak_problem()
    print()

    combined = ConvergenceGraph("L-shape: h / p / hp")
    for kind in ('h', 'p', 'hp'):
        _, g = demo_l_shape(kind)
        for row, values in g.rows.items():
            for x, y in values:
                combined.add_values(x, y, row)
        print()
    combined.save("conv_dof_lshape.dat")

    demo_multimesh()
    print()

    if '--plot' in sys.argv:
        graph.plot("conv_dof_peak.png")
        combined.plot("conv_dof_lshape.png")
        plot_orders(result.spaces[0], "orders_peak.png")
        print("📊 图像已保存")
    print("🎉 演示完成")


if __name__ == "__main__":
    main()
