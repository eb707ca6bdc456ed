"""OutputManager：引擎持久化边界在 CLI 里的替身。

引擎本身不拥有存储，只接收/返回快照；这里把快照、审计结果、
指令写成 JSON/Markdown，供下一章读取与人工检查。
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from threadloom.engine.directive_assembler import format_directive_for_prompt
from threadloom.models.audit import AuditResult
from threadloom.models.directive import Directive
from threadloom.state.thread_store import ThreadStore

logger = logging.getLogger(__name__)


class OutputManager:
    """管理单部小说的全部产出物，每一步结果立即写入磁盘。"""

    def __init__(self, output_dir: str | Path, novel_id: str = "untitled"):
        self.root = Path(output_dir)
        self.novel_id = novel_id

        self.snapshots_dir = self.root / "snapshots"
        self.audits_dir = self.root / "audits"
        self.directives_dir = self.root / "directives"
        for d in [self.snapshots_dir, self.audits_dir, self.directives_dir]:
            d.mkdir(parents=True, exist_ok=True)

        self._metadata: dict[str, Any] = self._load_metadata() or {
            "novel_id": novel_id,
            "created_at": datetime.now().isoformat(),
            "last_chapter": None,
            "log": [],
        }

    @property
    def latest_store_path(self) -> Path:
        return self.root / "latest_store.json"

    # ────────────────────────────────────────────
    # 快照
    # ────────────────────────────────────────────

    def save_snapshot(self, store: ThreadStore, chapter_number: int) -> Path:
        """保存本章快照，并覆盖 latest_store.json。"""
        data = store.model_dump(mode="json")
        filepath = self.snapshots_dir / f"chapter_{chapter_number:03d}_store.json"
        self._write_json(filepath, data)
        self._write_json(self.latest_store_path, data)
        self._log("snapshot", chapter_number, version=store.version, threads=len(store.threads))
        logger.info("快照已写入: %s (v%d, %d 条线索)", filepath.name, store.version, len(store.threads))
        return filepath

    def load_latest_snapshot(self) -> ThreadStore | None:
        """读取最新快照，不存在时返回 None。"""
        if not self.latest_store_path.exists():
            return None
        return self.load_snapshot(self.latest_store_path)

    @staticmethod
    def load_snapshot(path: str | Path) -> ThreadStore:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return ThreadStore.model_validate(data)

    # ────────────────────────────────────────────
    # 审计与指令
    # ────────────────────────────────────────────

    def save_audit_result(self, result: AuditResult) -> Path:
        """保存审计结果（不含快照本体，快照另存）。"""
        data = result.model_dump(mode="json", exclude={"store"})
        data["store_version"] = result.store.version
        filepath = self.audits_dir / f"chapter_{result.chapter_number:03d}_audit.json"
        self._write_json(filepath, data)
        self._log(
            "audit",
            result.chapter_number,
            created=result.new_threads_created,
            resolved=result.threads_resolved,
            warnings=len(result.warnings),
            fallback=result.fallback,
        )
        return filepath

    def save_directive(self, directive: Directive) -> tuple[Path, Path]:
        """保存指令：JSON 供程序读取，Markdown 供写作端直接使用。"""
        prefix = f"chapter_{directive.chapter_number:03d}_directive"
        json_path = self.directives_dir / f"{prefix}.json"
        md_path = self.directives_dir / f"{prefix}.md"
        self._write_json(json_path, directive.model_dump(mode="json"))
        md_path.write_text(format_directive_for_prompt(directive), encoding="utf-8")
        self._log(
            "directive",
            directive.chapter_number,
            anchors=len(directive.thread_anchors),
            fallback=directive.fallback,
        )
        logger.info("指令已写入: %s", md_path.name)
        return json_path, md_path

    # ────────────────────────────────────────────
    # 内部工具
    # ────────────────────────────────────────────

    def _log(self, kind: str, chapter_number: int, **fields: Any) -> None:
        self._metadata["log"].append({
            "type": kind,
            "chapter_number": chapter_number,
            "timestamp": datetime.now().isoformat(),
            **fields,
        })
        if kind == "snapshot":
            self._metadata["last_chapter"] = chapter_number
        self._save_metadata()

    def _write_json(self, filepath: Path, data: Any) -> None:
        filepath.write_text(
            json.dumps(data, ensure_ascii=False, indent=2, default=str),
            encoding="utf-8",
        )

    def _load_metadata(self) -> dict[str, Any] | None:
        path = self.root / "metadata.json"
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _save_metadata(self) -> None:
        self._metadata["updated_at"] = datetime.now().isoformat()
        self._write_json(self.root / "metadata.json", self._metadata)
