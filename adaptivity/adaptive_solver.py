"""
hp 自适应循环

状态机：INIT -> SOLVE_COARSE -> SOLVE_REFERENCE -> ESTIMATE -> (DONE | REFINE) -> SOLVE_COARSE ...
网格、空间、解和配置都作为显式对象在循环中传递，没有全局状态。
"""

import warnings
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from core.config import AdaptivityConfig
from core.timing import TimePeriod
from finite_elements.assembly import WeakForm
from finite_elements.dof_manager import H1Space
from finite_elements.mesh import Mesh
from finite_elements.solution import ExactSolution, h1_error_parts
from finite_elements.solvers import SolverConfig, solve_linear, project_global
from .error_estimator import AggregationPolicy
from .mesh_refinement import Adapt, RefinementStrategy
from .selectors import CandList, H1ProjBasedSelector


class LoopState(Enum):
    INIT = 'init'
    SOLVE_COARSE = 'solve_coarse'
    SOLVE_REFERENCE = 'solve_reference'
    ESTIMATE = 'estimate'
    REFINE = 'refine'
    DONE = 'done'


@dataclass
class IterationRecord:
    """一次自适应迭代的结果"""
    iteration: int
    ndof: int
    ref_ndof: int
    err_est: float  # 相对误差估计 (%)
    err_exact: Optional[float] = None  # 相对精确误差 (%)
    cpu_time: float = 0.0
    n_refined: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class AdaptivityResult:
    """自适应循环的最终结果"""
    records: List[IterationRecord] = field(default_factory=list)
    reason: str = ''  # converged / ndof_limit / no_refinement / max_iterations
    spaces: list = field(default_factory=list)
    solutions: list = field(default_factory=list)
    ref_solutions: list = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.reason == 'converged'

    @property
    def final_error(self) -> float:
        return self.records[-1].err_est if self.records else float('inf')


def build_reference_spaces(spaces: Sequence[H1Space], order_increase: int = 1) -> List[H1Space]:
    """
    参考空间：网格复制后全部各向同性细化一次，阶数加 order_increase
    共享同一网格的空间共享同一参考网格
    """
    ref_meshes: Dict[int, Mesh] = {}
    ref_spaces = []
    for sp in spaces:
        key = id(sp.mesh)
        if key not in ref_meshes:
            ref_mesh = sp.mesh.copy()
            ref_mesh.refine_all_elements()
            ref_meshes[key] = ref_mesh
        ref_space = sp.dup(ref_meshes[key])
        ref_space.copy_orders(sp, order_increase)
        ref_space.assign_dofs()
        ref_spaces.append(ref_space)
    return ref_spaces


class AdaptivityLoop:
    """hp 自适应求解器"""

    def __init__(self, spaces: Sequence[H1Space], weak_form: WeakForm,
                 config: Optional[AdaptivityConfig] = None,
                 selector: Optional[H1ProjBasedSelector] = None,
                 exact: Optional[Sequence] = None,
                 solver_config: Optional[SolverConfig] = None,
                 error_forms: Optional[Dict] = None):
        self.spaces = list(spaces)
        if len(self.spaces) != weak_form.neq:
            raise ValueError(f"空间个数 {len(self.spaces)} 与方程个数 {weak_form.neq} 不一致")
        self.wf = weak_form
        self.config = config or AdaptivityConfig()
        self.selector = selector or H1ProjBasedSelector(CandList(self.config.cand_list), self.config.conv_exp)
        if exact is not None and not isinstance(exact, (list, tuple)):
            exact = [exact]
        self.exact = exact
        self.solver_config = solver_config or SolverConfig()
        self.error_forms = dict(error_forms or {})
        self.strategy = RefinementStrategy.from_id(self.config.strategy, self.config.threshold)

        self.state = LoopState.INIT
        self.result = AdaptivityResult()
        self.timer = TimePeriod()
        self._callbacks: Dict[str, List[Callable]] = {
            'step_completed': [],
            'refinement_done': [],
        }

    @classmethod
    def from_mesh(cls, mesh: Mesh, weak_form: WeakForm, config: Optional[AdaptivityConfig] = None,
                  essential_markers=(), **kwargs) -> 'AdaptivityLoop':
        """
        由初始网格创建空间：先做 init_ref_num 次整体细化，
        multi=True 时每个分量使用独立的网格副本
        """
        config = config or AdaptivityConfig()
        mesh = mesh.copy()
        for _ in range(config.init_ref_num):
            mesh.refine_all_elements()
        spaces = []
        for i in range(weak_form.neq):
            m = mesh.copy() if (config.multi and i > 0) else mesh
            spaces.append(H1Space(m, config.p_init, essential_markers))
        return cls(spaces, weak_form, config, **kwargs)

    def add_callback(self, event: str, callback: Callable):
        """添加回调函数"""
        if event in self._callbacks:
            self._callbacks[event].append(callback)
        else:
            warnings.warn(f"Unknown callback event: {event}")

    def remove_callback(self, event: str, callback: Callable):
        if event in self._callbacks and callback in self._callbacks[event]:
            self._callbacks[event].remove(callback)

    def _notify(self, event: str, *args):
        for callback in self._callbacks[event]:
            callback(*args)

    # ---- 各个状态 ----
    def _init(self):
        for sp in self.spaces:
            sp.assign_dofs()

    def _solve_coarse(self, ref_slns=None):
        if self.config.project_reference and ref_slns is not None:
            return project_global(self.spaces, ref_slns, 'h1', self.solver_config)
        return solve_linear(self.spaces, self.wf, self.solver_config)

    def _solve_reference(self):
        ref_spaces = build_reference_spaces(self.spaces, self.config.order_increase)
        return ref_spaces, solve_linear(ref_spaces, self.wf, self.solver_config)

    def _make_adapt(self) -> Adapt:
        weights = self.config.component_weights or None
        adapt = Adapt(self.spaces, AggregationPolicy(self.config.aggregation), weights, self.config.num_workers)
        for (i, j), form in self.error_forms.items():
            adapt.set_error_form(i, j, form)
        return adapt

    def _exact_error(self, slns) -> Optional[float]:
        """相对精确误差 (%)"""
        if self.exact is None:
            return None
        num, den = 0.0, 0.0
        for sln, ex in zip(slns, self.exact):
            err, norm = h1_error_parts(sln, ex)
            num += err
            den += norm
        if den <= 0.0:
            return float(np.sqrt(num)) * 100.0
        return 100.0 * float(np.sqrt(num / den))

    def step(self, iteration: int) -> bool:
        """执行一次迭代，返回是否结束"""
        cfg = self.config
        if self.config.project_reference:
            self.state = LoopState.SOLVE_REFERENCE
            ref_spaces, ref_slns = self._solve_reference()
            self.state = LoopState.SOLVE_COARSE
            slns = self._solve_coarse(ref_slns)
        else:
            self.state = LoopState.SOLVE_COARSE
            slns = self._solve_coarse()
            self.state = LoopState.SOLVE_REFERENCE
            ref_spaces, ref_slns = self._solve_reference()

        self.state = LoopState.ESTIMATE
        adapt = self._make_adapt()
        err_est = adapt.calc_error(slns, ref_slns)
        self.timer.tick()

        ndof = sum(sp.get_num_dofs() for sp in self.spaces)
        record = IterationRecord(
            iteration=iteration,
            ndof=ndof,
            ref_ndof=sum(sp.get_num_dofs() for sp in ref_spaces),
            err_est=err_est,
            err_exact=self._exact_error(slns),
            cpu_time=self.timer.accumulated(),
        )
        self.result.records.append(record)
        self.result.solutions, self.result.ref_solutions = slns, ref_slns
        self.timer.tick()

        reason = None
        if err_est < cfg.err_stop:
            reason = 'converged'
        elif ndof >= cfg.ndof_stop:
            reason = 'ndof_limit'
        elif cfg.max_iterations is not None and iteration >= cfg.max_iterations:
            reason = 'max_iterations'
        else:
            self.state = LoopState.REFINE
            done = adapt.adapt(self.selector, self.strategy, cfg.mesh_regularity)
            record.n_refined = len(adapt.last_refined) + len(adapt.forced)
            self.timer.tick()
            self._notify('refinement_done', adapt)
            if done:
                reason = 'no_refinement'

        self._notify('step_completed', record)
        self.timer.tick(skip=True)
        if reason is not None:
            self.result.reason = reason
            self.state = LoopState.DONE
            return True
        return False

    def run(self) -> AdaptivityResult:
        """运行自适应循环直到满足停止准则"""
        self.state = LoopState.INIT
        self.result = AdaptivityResult(spaces=self.spaces)
        self.timer.reset()
        self._init()
        iteration = 0
        while self.state != LoopState.DONE:
            iteration += 1
            self.step(iteration)
        return self.result


def adapt_to_exact_function(space: H1Space, fn: Callable,
                            selector: Optional[H1ProjBasedSelector] = None,
                            strategy: Optional[RefinementStrategy] = None,
                            mesh_regularity: int = -1, err_stop: float = 1.0, ndof_stop: int = 60000,
                            max_iterations: Optional[int] = None, order_increase: int = 1,
                            order: int = 8) -> AdaptivityResult:
    """
    把空间 space 自适应到已知函数 fn(x, y) -> (u, du/dx, du/dy)，不求解方程

    每次迭代把 fn 分别 H1 投影到粗空间和参考空间，用两者之差估计误差。
    space 及其网格被原地细化。

    Parameters:
        order: 积分 fn 时使用的多项式阶数
    """
    selector = selector or H1ProjBasedSelector()
    strategy = strategy or RefinementStrategy()
    result = AdaptivityResult(spaces=[space])
    timer = TimePeriod()
    space.assign_dofs()
    iteration = 0
    while True:
        iteration += 1
        exact = ExactSolution(space.mesh, fn, order=order)
        ref_spaces = build_reference_spaces([space], order_increase)
        sln = project_global([space], [exact])[0]
        ref = project_global(ref_spaces, [exact])[0]

        adapt = Adapt([space])
        err_est = adapt.calc_error([sln], [ref])
        timer.tick()
        err, norm = h1_error_parts(sln, exact)
        record = IterationRecord(
            iteration=iteration,
            ndof=space.get_num_dofs(),
            ref_ndof=ref_spaces[0].get_num_dofs(),
            err_est=err_est,
            err_exact=100.0 * float(np.sqrt(err / norm)) if norm > 0.0 else 100.0 * float(np.sqrt(err)),
            cpu_time=timer.accumulated(),
        )
        result.records.append(record)
        result.solutions, result.ref_solutions = [sln], [ref]
        timer.tick(skip=True)

        if err_est < err_stop:
            result.reason = 'converged'
        elif record.ndof >= ndof_stop:
            result.reason = 'ndof_limit'
        elif max_iterations is not None and iteration >= max_iterations:
            result.reason = 'max_iterations'
        else:
            done = adapt.adapt(selector, strategy, mesh_regularity)
            record.n_refined = len(adapt.last_refined) + len(adapt.forced)
            timer.tick()
            if done:
                result.reason = 'no_refinement'
        if result.reason:
            return result
