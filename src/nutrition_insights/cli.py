"""
命令行工具

查询模型状态、下载/删除模型，以及根据营养数据文件生成洞察。
"""

import argparse
import importlib.util
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .core.config import ConfigManager
from .core.exceptions import NutritionInsightsError
from .core.models import (
    DownloadProgress,
    InsightCategory,
    InsightRequest,
    LLMStatus,
    NutritionAggregates,
)
from .services.error_handler import setup_error_handling
from .services.insight_service import InsightService


logger = logging.getLogger(__name__)


class JsonFileDataSource:
    """从JSON文件读取营养汇总数据"""

    def __init__(self, path: Optional[str]):
        self.path = Path(path) if path else None

    def get_aggregates(self) -> NutritionAggregates:
        if self.path is None:
            return NutritionAggregates()
        with open(self.path, 'r', encoding='utf-8') as f:
            return NutritionAggregates.from_dict(json.load(f))


def _print_progress(progress: DownloadProgress) -> None:
    eta = progress.estimated_seconds_remaining
    eta_text = f", 剩余约{eta}秒" if eta is not None else ""
    print(
        f"\r⬇️  {progress.percentage:3d}% "
        f"({progress.bytes_downloaded / 1_000_000:.0f}MB / {progress.total_bytes / 1_000_000:.0f}MB{eta_text})",
        end="",
        flush=True,
    )


def cmd_status(service: InsightService, args: argparse.Namespace) -> int:
    status = service.get_status()
    print(json.dumps(status.to_dict(), ensure_ascii=False, indent=2))
    return 0


def cmd_download(service: InsightService, args: argparse.Namespace) -> int:
    outcome = service.download_model(_print_progress)
    print()
    if outcome.success:
        print(f"✅ 模型已就绪 ({outcome.status.value})")
        return 0
    print(f"❌ 下载失败: {outcome.error}")
    return 1


def cmd_delete(service: InsightService, args: argparse.Namespace) -> int:
    service.delete_model()
    print("🗑️  模型已删除，洞察缓存已清空")
    return 0


def cmd_clear(service: InsightService, args: argparse.Namespace) -> int:
    service.clear_insights()
    print("🧹 洞察缓存已清空")
    return 0


DEPENDENCIES = [
    ("llama_cpp", "llama-cpp-python"),
    ("psutil", "psutil"),
    ("requests", "requests"),
]


def cmd_doctor(service: InsightService, args: argparse.Namespace) -> int:
    """检查运行环境：依赖、设备能力和模型文件"""
    passed = True

    print("📦 检查依赖...")
    for module_name, display_name in DEPENDENCIES:
        if importlib.util.find_spec(module_name) is not None:
            print(f"✅ {display_name}")
        else:
            print(f"❌ {display_name}")
            passed = False

    print("🖥️  检查设备...")
    classification = service.device_probe.classify()
    print(f"   内存: {classification.total_ram_gb:.1f}GB, 架构: {classification.machine}")
    usage = service.device_probe.get_memory_usage()
    print(f"   当前进程占用: {usage['rss'] / (1024 * 1024):.0f}MB")
    if classification.supported:
        model = classification.recommended_model
        print(f"✅ 推荐模型: {model.name}")
        if not service.device_probe.check_memory_availability(model.size_bytes // (1024 * 1024)):
            print("⚠️  当前可用内存不足以加载模型，生成时可能失败")
    else:
        print(f"⚠️  {classification.reason}")

    print("📂 检查模型...")
    status = service.get_status()
    if status.ready:
        size_mb = service.get_model_size() / (1024 * 1024)
        print(f"✅ 模型已就绪 ({status.provider}, {size_mb:.0f}MB)")
    elif status.reason == LLMStatus.REASON_DOWNLOAD_REQUIRED:
        print(f"⚠️  需要下载 {status.model_name} (约{status.download_size_mb}MB)，运行: nutrition-insights download")
    else:
        print(f"⚠️  {status.message}，将使用规则洞察")

    return 0 if passed else 1


def cmd_insights(service: InsightService, args: argparse.Namespace) -> int:
    request = None
    if args.category or args.question:
        request = InsightRequest(
            category=InsightCategory(args.category) if args.category else None,
            question=args.question,
        )

    insights = service.refresh(request) if args.refresh else service.generate(request)
    if args.json:
        print(json.dumps([i.to_dict() for i in insights], ensure_ascii=False, indent=2))
        return 0

    if not insights:
        empty_state = service.get_empty_state()
        if empty_state:
            print(f"{empty_state['title']}\n{empty_state['message']}")
        return 0

    for insight in insights:
        print(f"{insight.icon} {insight.title}")
        print(f"   {insight.body}")
    return 0


COMMANDS = {
    "status": cmd_status,
    "download": cmd_download,
    "delete": cmd_delete,
    "clear": cmd_clear,
    "insights": cmd_insights,
    "doctor": cmd_doctor,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nutrition-insights", description="本地营养洞察工具")
    parser.add_argument("--config-dir", help="配置目录，默认 ~/.nutrition_insights")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出详细日志")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="查看模型状态")
    subparsers.add_parser("download", help="下载推荐的模型")
    subparsers.add_parser("delete", help="删除模型文件")
    subparsers.add_parser("clear", help="清空洞察缓存")
    subparsers.add_parser("doctor", help="检查运行环境")

    insights_parser = subparsers.add_parser("insights", help="生成洞察")
    insights_parser.add_argument("--data", help="营养汇总数据JSON文件")
    insights_parser.add_argument(
        "--category",
        choices=[c.value for c in InsightCategory],
        help="优先的洞察类别",
    )
    insights_parser.add_argument("--question", help="针对今天数据的问题")
    insights_parser.add_argument("--refresh", action="store_true", help="忽略缓存重新生成")
    insights_parser.add_argument("--json", action="store_true", help="以JSON格式输出")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """命令行入口"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    service = None
    try:
        settings = ConfigManager(args.config_dir).get_settings()
        error_handler = setup_error_handling(settings.log_file)
        data_source = JsonFileDataSource(getattr(args, "data", None))
        service = InsightService(data_source, settings=settings, error_handler=error_handler)
        return COMMANDS[args.command](service, args)
    except NutritionInsightsError as e:
        logger.error(f"执行失败: {e}")
        print(f"❌ {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        if service is not None:
            service.cancel_download()
        print("\n⏹️  已取消")
        return 130
    finally:
        if service is not None:
            service.shutdown()


if __name__ == "__main__":
    sys.exit(main())
