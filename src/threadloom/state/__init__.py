"""线索快照（章节图状态见 threadloom.state.loom_state）。"""

from threadloom.state.thread_store import ThreadStore

__all__ = ["ThreadStore"]
