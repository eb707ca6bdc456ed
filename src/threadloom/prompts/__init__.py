"""提示词管理：审计与导演的提示词以 .txt 文件存放在本目录。

load_prompt() 按文件名加载并缓存，schema 文件（含 JSON 示例）直接拼接进提示词。
"""

from __future__ import annotations

import functools
from pathlib import Path

_PROMPTS_DIR = Path(__file__).parent


@functools.lru_cache(maxsize=32)
def load_prompt(name: str) -> str:
    """加载提示词文件（可省略 .txt 后缀）。

    Raises:
        FileNotFoundError: 提示词文件不存在时。
    """
    filename = name if name.endswith(".txt") else f"{name}.txt"
    filepath = _PROMPTS_DIR / filename
    if not filepath.exists():
        raise FileNotFoundError(f"提示词文件不存在: {filepath}")
    return filepath.read_text(encoding="utf-8").strip()


__all__ = ["load_prompt"]
