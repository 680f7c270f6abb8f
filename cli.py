"""表格任务规划器 - 命令行入口"""

import sys
import json
import logging
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from sheetplan.core.config import settings
from sheetplan.engine.formatter import format_plan, format_replan
from sheetplan.engine.models import ReplanContext
from sheetplan.processor import PlanProcessor, ProcessConfig
from sheetplan.schemas import DataModelLoadError, load_plan_request_file


def print_usage():
    """显示帮助"""
    print("表格任务规划器\n")
    print("用法:")
    print("  python cli.py <request.yaml|request.json> [--json] [--fail <步骤序号> <错误信息>]")
    print("  python cli.py --help")
    print("\n参数:")
    print("  --json                 以 JSON 输出执行计划")
    print("  --fail N \"错误信息\"    模拟第 N 个步骤（从 1 开始）失败，预览重新规划")
    print("\n示例:")
    print("  python cli.py examples/orders.yaml")
    print("  python cli.py examples/orders.yaml --fail 3 \"#REF!\"")
    print("\n环境变量:")
    print("  SHEETPLAN_LOG_LEVEL          - 日志级别（默认: INFO）")
    print("  SHEETPLAN_MAX_REPLAN_COUNT   - 最大重新规划次数（默认: 3）")


def parse_args(argv: List[str]) -> Tuple[str, bool, Optional[Tuple[int, str]]]:
    """
    解析命令行参数

    Returns:
        (请求文件路径, 是否输出 JSON, (失败步骤序号, 错误信息) 或 None)

    Raises:
        ValueError: 参数不合法
    """
    path = None
    as_json = False
    fail = None

    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == "--json":
            as_json = True
        elif arg == "--fail":
            if i + 2 >= len(argv):
                raise ValueError("--fail 需要两个参数: <步骤序号> <错误信息>")
            try:
                index = int(argv[i + 1])
            except ValueError:
                raise ValueError(f"步骤序号必须是整数: {argv[i + 1]}")
            fail = (index, argv[i + 2])
            i += 2
        elif path is None:
            path = arg
        else:
            raise ValueError(f"未知参数: {arg}")
        i += 1

    if path is None:
        raise ValueError("缺少请求文件")
    return path, as_json, fail


def main():
    """主函数"""
    load_dotenv()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if len(sys.argv) < 2 or sys.argv[1] in ["-h", "--help"]:
        print_usage()
        return

    try:
        path, as_json, fail = parse_args(sys.argv[1:])
    except ValueError as e:
        print(f"❌ {e}")
        sys.exit(2)

    # ==================== 加载请求 ====================
    try:
        request = load_plan_request_file(path)
    except DataModelLoadError as e:
        print(f"❌ 加载失败: {e}")
        sys.exit(1)

    data_model = request.data_model.to_domain() if request.data_model else None

    # ==================== 生成计划 ====================
    processor = PlanProcessor()
    result = processor.process_sync(request.task, data_model, ProcessConfig(task_type=request.task_type))

    if result.has_errors():
        print("\n⚠️  规划错误:")
        for error in result.errors:
            print(f"   - {error}")
        sys.exit(1)

    plan = result.plan
    if as_json:
        print(json.dumps(plan.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(format_plan(plan))

    # ==================== 预览重新规划 ====================
    if fail is None:
        return

    index, error_text = fail
    if not 1 <= index <= len(plan.steps):
        print(f"\n❌ 步骤序号超出范围: {index}（共 {len(plan.steps)} 个步骤）")
        sys.exit(2)

    failed_step = plan.steps[index - 1]
    replan_result = processor.replan(plan, failed_step, error_text, ReplanContext(error_details=error_text))

    print("\n" + "=" * 60)
    if as_json:
        print(json.dumps(replan_result.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(format_replan(replan_result))


if __name__ == "__main__":
    main()
