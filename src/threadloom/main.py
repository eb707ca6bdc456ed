"""Threadloom CLI 入口：叙事线索调度引擎。"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from threadloom.agents.clerk import audit_chapter
from threadloom.agents.director import direct_chapter
from threadloom.config.settings import (
    EngineSettings,
    ModelConfig,
    load_loom_config,
    load_settings_from_yaml,
    merge_novel_overrides,
)
from threadloom.engine.audit_applier import apply_audit, normalize_events
from threadloom.engine.directive_assembler import assemble_directive, format_directive_for_prompt
from threadloom.engine.physics import recompute, thread_health_metrics
from threadloom.engine.selector import health, select
from threadloom.graph.chapter_graph import run_chapter
from threadloom.models.audit import AuditResult, ClassifierOutput
from threadloom.output.manager import OutputManager
from threadloom.state.thread_store import ThreadStore

console = Console()
logger = logging.getLogger("threadloom")

_PULSE_STYLES = {
    "green": "green",
    "yellow": "yellow",
    "orange": "dark_orange",
    "red": "red",
    "gold": "bold gold1",
}


def _init_model(model_config: ModelConfig, timeout: float | None = None):
    """根据配置初始化 LLM。timeout 传给客户端作为单次请求超时（秒）。"""
    provider = model_config.provider.lower()

    if provider == "google":
        from langchain_google_genai import ChatGoogleGenerativeAI

        return ChatGoogleGenerativeAI(
            model=model_config.model_name,
            temperature=model_config.temperature,
            max_output_tokens=model_config.max_tokens,
            timeout=timeout,
        )
    elif provider == "openai":
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            model=model_config.model_name,
            temperature=model_config.temperature,
            max_tokens=model_config.max_tokens,
            timeout=timeout,
        )
    else:
        # 通过 langchain 的通用接口
        from langchain.chat_models import init_chat_model

        return init_chat_model(
            f"{provider}:{model_config.model_name}",
            temperature=model_config.temperature,
            max_tokens=model_config.max_tokens,
            timeout=timeout,
        )


def _load_settings(args: argparse.Namespace) -> EngineSettings:
    config_path = getattr(args, "config", None)
    settings = load_settings_from_yaml(config_path)
    if config_path:
        # novels.<id> 下的单书覆盖
        settings.loom = load_loom_config(config_path, args.novel)
    overrides_path = getattr(args, "novel_config", None)
    if overrides_path:
        import yaml

        with open(overrides_path, encoding="utf-8") as f:
            overrides = yaml.safe_load(f) or {}
        settings.loom = merge_novel_overrides(settings.loom, overrides)
    return settings


def _output_manager(args: argparse.Namespace, settings: EngineSettings) -> OutputManager:
    root = Path(args.output or settings.output_dir) / args.novel
    return OutputManager(root, novel_id=args.novel)


def _load_store(args: argparse.Namespace, output_mgr: OutputManager) -> ThreadStore:
    """--store 指定的快照 > 输出目录中的最新快照 > 新建空快照。"""
    if getattr(args, "store", None):
        return OutputManager.load_snapshot(args.store)
    store = output_mgr.load_latest_snapshot()
    if store is None:
        logger.info("未找到快照，为 %s 新建空线索仓库", args.novel)
        store = ThreadStore(novel_id=args.novel)
    return store


def _current_chapter(args: argparse.Namespace, store: ThreadStore) -> int:
    if getattr(args, "chapter", None):
        return args.chapter
    return (store.last_audited_chapter or 0) + 1


# ────────────────────────────────────────────
# 输出
# ────────────────────────────────────────────


def _print_threads(store: ThreadStore, chapter: int, settings: EngineSettings) -> None:
    table = Table(title=f"{store.novel_id} · 第{chapter}章视角 · 快照 v{store.version}")
    table.add_column("签名", style="bold")
    table.add_column("类别")
    table.add_column("状态")
    table.add_column("karma", justify="right")
    table.add_column("债务", justify="right")
    table.add_column("熵", justify="right")
    table.add_column("紧迫度", justify="right")
    table.add_column("窗口")
    table.add_column("最近触及", justify="right")

    for t in store.threads:
        m = thread_health_metrics(t, chapter, settings.loom)
        style = _PULSE_STYLES.get(m.pulse_color.value, "")
        status = t.status.value + (" 📌" if t.director_attention_forced else "")
        if m.crack_effect:
            status += " ⚡"
        table.add_row(
            t.signature,
            t.category.value,
            f"[{style}]{status}[/{style}]" if style else status,
            str(t.karma_weight),
            f"{t.payoff_debt:.0f}",
            f"{t.entropy:.1f}",
            f"{m.urgency:.1f}",
            m.horizon.value if m.horizon else "-",
            f"第{t.last_mentioned_chapter}章",
        )
    console.print(table)
    console.print(f"叙事健康度: [bold]{health(store.threads, chapter, settings.loom):.1f}[/bold]/100")


def _print_audit(result: AuditResult) -> None:
    console.print(
        Panel(
            f"新建 {result.new_threads_created} · 推进 {result.threads_progressed} · "
            f"回收 {result.threads_resolved} · 停滞 {result.threads_stalled}"
            + (" · [yellow]纯物理降级[/yellow]" if result.fallback else ""),
            title=f"第{result.chapter_number}章审计",
        )
    )
    for w in result.warnings:
        console.print(f"  [yellow]⚠[/yellow] {w}")
    for w in result.consistency_warnings:
        console.print(f"  [red]✗[/red] {w}")


# ────────────────────────────────────────────
# 子命令
# ────────────────────────────────────────────


def cmd_status(args: argparse.Namespace) -> None:
    settings = _load_settings(args)
    output_mgr = _output_manager(args, settings)
    store = _load_store(args, output_mgr)
    _print_threads(store, _current_chapter(args, store), settings)


def cmd_audit(args: argparse.Namespace) -> None:
    """审计一章：--events 指定离线事件 JSON，否则调用书记官模型。"""
    settings = _load_settings(args)
    output_mgr = _output_manager(args, settings)
    store = _load_store(args, output_mgr)
    chapter = _current_chapter(args, store)

    if args.events:
        raw = json.loads(Path(args.events).read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            consistency = raw.get("consistencyWarnings", raw.get("consistency_warnings")) or []
            raw = raw.get("events")
        else:
            consistency = []
        events, notes = normalize_events(raw)
        output = ClassifierOutput(
            events=events,
            consistency_warnings=[str(w) for w in consistency] if isinstance(consistency, list) else [],
            normalization_warnings=notes,
        )
    else:
        text = Path(args.chapter_file).read_text(encoding="utf-8") if args.chapter_file else ""
        output = audit_chapter(
            _init_model(settings.clerk_model, settings.clerk.timeout_seconds),
            text,
            store.active_threads(),
            chapter,
            settings.clerk,
        )

    try:
        result = apply_audit(
            store, output.events, chapter, settings.loom, output.consistency_warnings
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    result = result.model_copy(update={"fallback": output.fallback})
    store = recompute(result.store, chapter, settings.loom)

    output_mgr.save_audit_result(result)
    output_mgr.save_snapshot(store, chapter)
    _print_audit(result)
    _print_threads(store, chapter, settings)


def cmd_direct(args: argparse.Namespace) -> None:
    """为下一章生成导演指令（--dry-run 时不调用模型）。"""
    settings = _load_settings(args)
    output_mgr = _output_manager(args, settings)
    store = _load_store(args, output_mgr)
    chapter = _current_chapter(args, store)

    selection = select(store.threads, chapter, settings.loom)
    if args.dry_run:
        directive = assemble_directive(selection, store.threads, chapter, settings.loom)
    else:
        directive = direct_chapter(
            _init_model(settings.director_model, settings.director.timeout_seconds),
            selection,
            store.threads,
            chapter,
            settings.loom,
            settings.director,
        )
    output_mgr.save_directive(directive)
    console.print(Markdown(format_directive_for_prompt(directive)))
    for w in directive.warnings:
        console.print(f"  [yellow]⚠[/yellow] {w}")


def cmd_run_chapter(args: argparse.Namespace) -> None:
    """完整流水线：审计本章 → 重算 → 选择 → 下一章指令 → 落盘。"""
    settings = _load_settings(args)
    output_mgr = _output_manager(args, settings)
    store = _load_store(args, output_mgr)
    chapter = _current_chapter(args, store)
    text = Path(args.chapter_file).read_text(encoding="utf-8")

    clerk_model = None if args.dry_run else _init_model(settings.clerk_model)
    director_model = None if args.dry_run else _init_model(settings.director_model)
    try:
        final = run_chapter(
            store,
            chapter,
            text,
            clerk_model=clerk_model,
            director_model=director_model,
            config=settings.loom,
            clerk_config=settings.clerk,
            director_config=settings.director,
            output_manager=output_mgr,
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if final.get("audit_result") is not None:
        _print_audit(final["audit_result"])
    _print_threads(final["store"], chapter, settings)
    if final.get("directive") is not None:
        console.print(Markdown(format_directive_for_prompt(final["directive"])))


def cmd_pin(args: argparse.Namespace) -> None:
    settings = _load_settings(args)
    output_mgr = _output_manager(args, settings)
    store = _load_store(args, output_mgr)
    try:
        store = store.pin(args.signature, forced=not args.unpin)
    except KeyError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    output_mgr.save_snapshot(store, store.last_audited_chapter or 0)
    console.print(f"{'取消钉选' if args.unpin else '已钉选'}: [bold]{args.signature}[/bold]")


def cmd_abandon(args: argparse.Namespace) -> None:
    settings = _load_settings(args)
    output_mgr = _output_manager(args, settings)
    store = _load_store(args, output_mgr)
    try:
        store = store.abandon(args.signature, args.reason, args.chapter)
    except KeyError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    output_mgr.save_snapshot(store, store.last_audited_chapter or 0)
    console.print(f"已放弃: [bold]{args.signature}[/bold]（{args.reason}）")


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--novel", "-n", default=os.environ.get("THREADLOOM_NOVEL", "default"), help="小说 ID")
    p.add_argument("--output", "-o", default="", help="输出目录（默认取配置中的 output_dir）")
    p.add_argument("--config", "-c", default=None, help="全局 YAML 配置")
    p.add_argument("--novel-config", default=None, help="单书 loom 参数覆盖（YAML）")
    p.add_argument("--store", default=None, help="显式指定快照 JSON 路径")
    p.add_argument("--verbose", "-v", action="store_true", help="详细日志输出")


def main() -> None:
    """CLI 主入口。"""
    from dotenv import load_dotenv
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="threadloom",
        description="Threadloom - 长篇连载的叙事线索调度引擎",
    )
    subparsers = parser.add_subparsers(dest="command", help="可用命令")

    status_parser = subparsers.add_parser("status", help="查看线索仪表盘")
    _add_common_args(status_parser)
    status_parser.add_argument("--chapter", type=int, default=None, help="以第几章为视角（默认下一章）")

    audit_parser = subparsers.add_parser("audit", help="审计一章并更新快照")
    _add_common_args(audit_parser)
    audit_parser.add_argument("chapter_file", nargs="?", default="", help="章节正文文件")
    audit_parser.add_argument("--chapter", type=int, default=None, help="章节号（默认上次审计 +1）")
    audit_parser.add_argument("--events", default="", help="离线分类事件 JSON（跳过模型调用）")

    direct_parser = subparsers.add_parser("direct", help="为下一章生成导演指令")
    _add_common_args(direct_parser)
    direct_parser.add_argument("--chapter", type=int, default=None, help="目标章节号（默认上次审计 +1）")
    direct_parser.add_argument("--dry-run", action="store_true", help="不调用模型，输出纯物理指令")

    run_parser = subparsers.add_parser("run-chapter", help="审计本章并生成下一章指令（完整流水线）")
    _add_common_args(run_parser)
    run_parser.add_argument("chapter_file", help="章节正文文件")
    run_parser.add_argument("--chapter", type=int, default=None, help="章节号（默认上次审计 +1）")
    run_parser.add_argument("--dry-run", action="store_true", help="不调用模型，纯物理流水线")

    pin_parser = subparsers.add_parser("pin", help="钉选线索，强制进入下一章")
    _add_common_args(pin_parser)
    pin_parser.add_argument("signature", help="线索签名")
    pin_parser.add_argument("--unpin", action="store_true", help="取消钉选")

    abandon_parser = subparsers.add_parser("abandon", help="人工放弃线索")
    _add_common_args(abandon_parser)
    abandon_parser.add_argument("signature", help="线索签名")
    abandon_parser.add_argument("--reason", "-r", required=True, help="放弃原因")
    abandon_parser.add_argument("--chapter", type=int, default=None, help="放弃发生的章节")

    args = parser.parse_args()

    # 配置日志
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
    )

    if args.command == "status":
        cmd_status(args)
    elif args.command == "audit":
        cmd_audit(args)
    elif args.command == "direct":
        cmd_direct(args)
    elif args.command == "run-chapter":
        cmd_run_chapter(args)
    elif args.command == "pin":
        cmd_pin(args)
    elif args.command == "abandon":
        cmd_abandon(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
