"""配置。"""

from threadloom.config.settings import (
    AgentConfig,
    EngineSettings,
    LoomConfig,
    ModelConfig,
    PayoffWindow,
    load_loom_config,
    load_settings_from_yaml,
)

__all__ = [
    "AgentConfig",
    "EngineSettings",
    "LoomConfig",
    "ModelConfig",
    "PayoffWindow",
    "load_loom_config",
    "load_settings_from_yaml",
]
