# データモデル
# ステップ・グループ・ランダムタイミング設定・実行テレメトリを定義

from .schema import (  # noqa: F401
    MousePosition,
    RandomTimingConfig,
    RunStatus,
    RunTelemetry,
    Step,
    StepData,
    StepType,
    describe_step,
)
