"""配置"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """规划器配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SHEETPLAN_",
        case_sensitive=False,
        extra="ignore",  # 忽略 .env 中未声明的变量，避免 ValidationError
    )

    # 应用配置
    ENV: str = "production"  # development | production
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # 编译配置
    FORMULA_SAMPLE_COUNT: int = 5  # 公式步骤抽样检查的格子数
    VERIFY_SAMPLE_COUNT: int = 10  # 终验步骤抽样检查的格子数
    STEP_DURATION_MS: int = 2000  # 单步预估耗时

    # 澄清判断
    MIN_DESCRIPTION_LENGTH: int = 20

    # 重新规划
    MAX_REPLAN_COUNT: int = 3  # 达到该次数后一律 abort
    SPLIT_BATCH_COUNT: int = 3  # split_step 的分批数

    # 风险评估阈值
    RISK_MAX_STEPS: int = 20
    RISK_MAX_FORMULA_STEPS: int = 5


settings = Settings()
