"""
自适应计算配置

所有参数均为普通数值，可以序列化为 YAML / JSON 文件保存和复现实验。
"""

import json
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional

import yaml


# 最大多项式阶数与最大细化层数
MAX_ORDER = 10
MAX_LEVEL = 30

# 细化策略编号
STRATEGY_FRACTION_OF_TOTAL = 0
STRATEGY_FRACTION_OF_MAX = 1
STRATEGY_ABSOLUTE = 2

CAND_LIST_NAMES = (
    'P_ISO', 'P_ANISO', 'H_ISO', 'H_ANISO',
    'HP_ISO', 'HP_ANISO_H', 'HP_ANISO_P', 'HP_ANISO',
)

AGGREGATION_NAMES = ('per_component', 'weighted_sum')


@dataclass
class AdaptivityConfig:
    """hp自适应循环配置"""

    # 初始网格与阶数
    p_init: int = 1
    init_ref_num: int = 0
    multi: bool = False  # True: 每个分量使用独立网格

    # 单元标记策略
    threshold: float = 0.3
    strategy: int = STRATEGY_FRACTION_OF_TOTAL

    # 候选细化列表与选择参数
    cand_list: str = 'HP_ANISO'
    conv_exp: float = 1.0
    order_increase: int = 1

    # 悬挂节点正则性: -1 不限制, N >= 0 最多 N 级
    mesh_regularity: int = -1

    # 停止准则
    err_stop: float = 1.0  # 相对误差 (%)
    ndof_stop: int = 60000
    max_iterations: Optional[int] = None

    # 多分量误差合并方式
    aggregation: str = 'per_component'
    component_weights: List[float] = field(default_factory=list)

    # True: 粗解由参考解投影得到，而不是单独求解
    project_reference: bool = False

    # 单元误差积分与候选搜索的工作线程数
    num_workers: int = 1

    def __post_init__(self):
        self.validate()

    def validate(self):
        """检查参数取值范围"""
        if not 1 <= self.p_init <= MAX_ORDER:
            raise ValueError(f"初始阶数必须在 1..{MAX_ORDER} 之间: {self.p_init}")
        if self.init_ref_num < 0:
            raise ValueError(f"初始细化次数不能为负数: {self.init_ref_num}")
        if self.strategy not in (STRATEGY_FRACTION_OF_TOTAL, STRATEGY_FRACTION_OF_MAX, STRATEGY_ABSOLUTE):
            raise ValueError(f"未知的细化策略: {self.strategy}")
        if self.threshold < 0:
            raise ValueError(f"阈值不能为负数: {self.threshold}")
        if self.cand_list not in CAND_LIST_NAMES:
            raise ValueError(f"未知的候选列表: {self.cand_list}")
        if self.conv_exp <= 0:
            raise ValueError(f"conv_exp 必须为正数: {self.conv_exp}")
        if self.order_increase < 0:
            raise ValueError(f"参考空间阶数增量不能为负数: {self.order_increase}")
        if self.mesh_regularity < -1:
            raise ValueError(f"网格正则性必须为 -1 或非负整数: {self.mesh_regularity}")
        if self.err_stop < 0:
            raise ValueError(f"误差停止准则不能为负数: {self.err_stop}")
        if self.ndof_stop <= 0:
            raise ValueError(f"自由度上限必须为正数: {self.ndof_stop}")
        if self.max_iterations is not None and self.max_iterations <= 0:
            raise ValueError(f"最大迭代次数必须为正数: {self.max_iterations}")
        if self.aggregation not in AGGREGATION_NAMES:
            raise ValueError(f"未知的误差合并方式: {self.aggregation}")
        if self.aggregation == 'weighted_sum' and not self.component_weights:
            raise ValueError("weighted_sum 合并方式需要显式给出 component_weights")
        if any(w < 0 for w in self.component_weights):
            raise ValueError("分量权重不能为负数")
        if self.num_workers < 1:
            raise ValueError(f"工作线程数至少为 1: {self.num_workers}")

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return asdict(self)

    def to_yaml(self, filepath: str):
        """保存为YAML文件"""
        with open(filepath, 'w', encoding='utf-8') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, allow_unicode=True)

    def to_json(self, filepath: str):
        """保存为JSON文件"""
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    @classmethod
    def from_yaml(cls, filepath: str) -> 'AdaptivityConfig':
        """从YAML文件加载"""
        with open(filepath, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        return cls(**(data or {}))

    @classmethod
    def from_json(cls, filepath: str) -> 'AdaptivityConfig':
        """从JSON文件加载"""
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls(**data)
