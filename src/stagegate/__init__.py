"""stagegate: staged release pipeline controller.

Advances a container image and a trained model version through the
``commit -> staging -> production`` environments, gated by a metric quality
gate and functional validation, with every alias traceable to the source
revision that produced it.

Example:
    >>> from stagegate import PipelineConfig, PipelineController
    >>> controller = PipelineController.from_config(PipelineConfig.load())
    >>> run = controller.run_pipeline("abc123")
    >>> run.status
    <StageStatus.SUCCEEDED: 'succeeded'>
"""

from __future__ import annotations

from stagegate.controller import PipelineController
from stagegate.dispatcher import StageTriggerDispatcher
from stagegate.errors import PipelineError
from stagegate.promotion import PromotionEngine
from stagegate.quality_gate import evaluate, evaluate_version
from stagegate.schemas.config import PipelineConfig
from stagegate.state_machine import PipelineStateMachine

__version__ = "0.1.0"

__all__ = [
    "PipelineConfig",
    "PipelineController",
    "PipelineError",
    "PipelineStateMachine",
    "PromotionEngine",
    "StageTriggerDispatcher",
    "__version__",
    "evaluate",
    "evaluate_version",
]
