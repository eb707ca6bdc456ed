"""产出物管理：快照、审计结果与导演指令的文件输出。

目录结构：
output/<novel_id>/
├── snapshots/                # 线索快照（每章一份）
│   ├── chapter_001_store.json
│   └── ...
├── audits/                   # 审计结果
│   ├── chapter_001_audit.json
│   └── ...
├── directives/               # 下一章导演指令
│   ├── chapter_002_directive.json
│   ├── chapter_002_directive.md
│   └── ...
├── latest_store.json         # 最新快照（CLI 默认读取）
└── metadata.json             # 运行元数据
"""

from threadloom.output.manager import OutputManager

__all__ = ["OutputManager"]
