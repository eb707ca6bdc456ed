"""Threadloom：长篇连载小说的叙事线索调度与生命周期引擎。"""

__version__ = "0.1.0"
