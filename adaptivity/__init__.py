"""
hp 自适应模块 - 误差估计、细化候选选择、细化执行与自适应循环
"""

from .error_estimator import ErrorEstimator, ErrorRecord, AggregationPolicy
from .selectors import CandList, Candidate, CandidateKind, H1ProjBasedSelector, candidate_dofs
from .mesh_refinement import Adapt, RefinementStrategy, StrategyKind, mark_elements
from .adaptive_solver import (
    AdaptivityLoop, AdaptivityResult, IterationRecord, LoopState, build_reference_spaces,
    adapt_to_exact_function,
)

__all__ = [
    'ErrorEstimator',
    'ErrorRecord',
    'AggregationPolicy',
    'CandList',
    'Candidate',
    'CandidateKind',
    'H1ProjBasedSelector',
    'candidate_dofs',
    'Adapt',
    'RefinementStrategy',
    'StrategyKind',
    'mark_elements',
    'AdaptivityLoop',
    'AdaptivityResult',
    'IterationRecord',
    'LoopState',
    'build_reference_spaces',
    'adapt_to_exact_function',
]
