"""线索仓库：单部小说全部线索的版本化快照。

快照是值语义：任何修改都返回一个 version+1 的新快照，旧快照保持不变。
持久化由调用方负责（章节之间自行保存/读取快照）。
"""

from __future__ import annotations

import logging
import time

from pydantic import BaseModel, Field

from threadloom.models.thread import Thread, ThreadStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class ThreadStore(BaseModel):
    """单部小说的线索快照。"""

    novel_id: str = Field(description="所属小说")
    version: int = Field(default=0, ge=0, description="快照版本号，每次派生 +1")
    last_audited_chapter: int | None = Field(
        default=None, description="最近一次应用审计的章节号（恰好一次语义的调用方契约）"
    )
    last_recomputed_chapter: int | None = Field(
        default=None, description="最近一次章末重算的章节号，重复重算不会重复累积熵"
    )
    threads: list[Thread] = Field(default_factory=list)

    # ────────────────────────────────────────────
    # 查询
    # ────────────────────────────────────────────

    def find_by_signature(self, signature: str) -> Thread | None:
        """按签名查找非 ABANDONED 线索（签名在这些线索中唯一）。"""
        for thread in self.threads:
            if thread.signature == signature and thread.status != ThreadStatus.ABANDONED:
                return thread
        return None

    def get(self, thread_id: str) -> Thread | None:
        for thread in self.threads:
            if thread.id == thread_id:
                return thread
        return None

    def active_threads(self) -> list[Thread]:
        """非终态线索。"""
        return [t for t in self.threads if t.status not in TERMINAL_STATUSES]

    def by_status(self, status: ThreadStatus) -> list[Thread]:
        return [t for t in self.threads if t.status == status]

    # ────────────────────────────────────────────
    # 派生新快照
    # ────────────────────────────────────────────

    def with_threads(
        self,
        threads: list[Thread],
        last_audited_chapter: int | None = None,
    ) -> ThreadStore:
        """用新的线索列表派生下一版本快照。"""
        return self.model_copy(
            update={
                "threads": list(threads),
                "version": self.version + 1,
                "last_audited_chapter": (
                    last_audited_chapter
                    if last_audited_chapter is not None
                    else self.last_audited_chapter
                ),
            },
            deep=True,
        )

    def replace(self, thread: Thread) -> ThreadStore:
        """用同 id 的线索替换，返回新快照。"""
        threads = [thread if t.id == thread.id else t for t in self.threads]
        return self.with_threads(threads)

    def _require_mutable(self, signature: str) -> Thread:
        thread = self.find_by_signature(signature)
        if thread is None:
            raise KeyError(f"线索不存在: {signature}")
        return thread

    # ────────────────────────────────────────────
    # 人工覆盖（仪表盘操作）
    # ────────────────────────────────────────────

    def pin(self, signature: str, forced: bool = True) -> ThreadStore:
        """设置/取消导演钉选。终态线索不受影响。"""
        thread = self._require_mutable(signature)
        if thread.is_terminal:
            logger.warning("线索 %s 已是终态 (%s)，忽略钉选", signature, thread.status.value)
            return self
        updated = thread.model_copy(
            update={"director_attention_forced": forced, "updated_at": time.time()}
        )
        return self.replace(updated)

    def boost_karma(self, signature: str, amount: int) -> ThreadStore:
        """手动提升因果权重，上限 100，不允许借此降低权重。"""
        if amount < 0:
            raise ValueError("boost_karma 只能提升权重")
        thread = self._require_mutable(signature)
        if thread.is_terminal:
            logger.warning("线索 %s 已是终态 (%s)，忽略权重调整", signature, thread.status.value)
            return self
        updated = thread.model_copy(
            update={
                "karma_weight": min(100, thread.karma_weight + amount),
                "updated_at": time.time(),
            }
        )
        return self.replace(updated)

    def abandon(
        self, signature: str, reason: str, current_chapter: int | None = None
    ) -> ThreadStore:
        """人工放弃线索（终态）。引擎自身永远不会自动放弃线索。"""
        from threadloom.engine.physics import transition

        thread = self._require_mutable(signature)
        if thread.is_terminal:
            logger.warning("线索 %s 已是终态 (%s)，无法放弃", signature, thread.status.value)
            return self
        if current_chapter is None:
            current_chapter = self.last_audited_chapter or thread.last_mentioned_chapter
        return self.replace(
            transition(thread, ThreadStatus.ABANDONED, current_chapter, reason=reason)
        )
