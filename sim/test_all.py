from __future__ import annotations

import argparse
import itertools
import sys
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from pathlib import Path
from typing import Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from rich.align import Align
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from sim.benches import (
    alu_test,
    control_unit_test,
    cpu_control_flow_test,
    cpu_forwarding_test,
    cpu_interrupt_test,
    cpu_load_use_test,
    cpu_program_test,
    cpu_reset_test,
    hazard_unit_test,
    memory_test,
    register_file_test,
)
from sim.test_utils import SimulationTest, TestResult

# 单元测试在前，整机测试在后
SUITES = (
    alu_test,
    register_file_test,
    control_unit_test,
    hazard_unit_test,
    memory_test,
    cpu_reset_test,
    cpu_forwarding_test,
    cpu_load_use_test,
    cpu_control_flow_test,
    cpu_interrupt_test,
    cpu_program_test,
)

console = Console()
SPINNER_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]
STATUS_STYLE = {
    "pending": ("○", "grey50", "待运行"),
    "running": ("⟳", "cyan", "运行中"),
    "passed": ("✔", "green", "通过"),
    "failed": ("✖", "red", "失败"),
}
BANNER = Text(" pipe8 Simulation Regression Suite ", style="bold white on dark_green", justify="center")
HELP = "命令: 输入编号运行 | a=全部 | t标签 运行该标签 | l编号查看日志 | r重置 | q退出"


def collect_tests() -> List[SimulationTest]:
    tests: List[SimulationTest] = []
    seen_keys: set[str] = set()
    for suite in SUITES:
        for test in suite.get_tests():
            if test.key in seen_keys:
                raise ValueError(f"Duplicated test key detected: {test.key}")
            seen_keys.add(test.key)
            tests.append(test)
    return tests


def first_error_line(result: TestResult) -> str:
    if result.passed:
        return ""
    if result.error:
        return str(result.error).splitlines()[0] if str(result.error) else type(result.error).__name__
    output = result.output.strip()
    return output.splitlines()[-1] if output else ""


class Dashboard:
    """测试状态表：记录每个测试的状态/结果，并渲染为 rich 面板。"""

    def __init__(self, tests: List[SimulationTest]):
        self.tests = tests
        self.status: Dict[str, str] = {}
        self.results: Dict[str, TestResult] = {}
        self.spinner: Dict[str, str] = {}
        self.message = "输入命令开始运行测试。"
        self.highlight: Optional[str] = None
        self.reset()

    def reset(self) -> None:
        self.status = {test.key: "pending" for test in self.tests}
        self.results.clear()
        self.spinner.clear()

    def count(self, status: str) -> int:
        return sum(1 for value in self.status.values() if value == status)

    def table(self) -> Table:
        table = Table(box=None, expand=True, header_style="bold grey70")
        table.add_column("#", width=3)
        table.add_column("状态", width=6)
        table.add_column("测试名称")
        table.add_column("说明")
        table.add_column("耗时", width=8, justify="right")
        table.add_column("标签")

        for idx, test in enumerate(self.tests, start=1):
            status = self.status[test.key]
            icon, color, label = STATUS_STYLE[status]
            if status == "running":
                icon = self.spinner.get(test.key, icon)

            result = self.results.get(test.key)
            error = first_error_line(result) if result else ""
            detail = Text(error, style=color) if error else Text(label if result or status == "running" else test.description)
            table.add_row(
                str(idx),
                Text(icon, style=color),
                test.name,
                detail,
                f"{result.duration:0.2f}s" if result else "-",
                Text(", ".join(test.tags), style="cyan"),
                style="bold magenta" if self.highlight == test.key else None,
            )
        return table

    def render(self) -> Group:
        summary = Text(
            f"总计 {len(self.tests)} | 通过 {self.count('passed')} | "
            f"失败 {self.count('failed')} | 待运行 {self.count('pending')}",
            style="bold",
            justify="center",
        )
        return Group(
            Panel(Align.center(BANNER), border_style="dark_green"),
            Panel(summary, border_style="grey46"),
            Panel(self.table(), border_style="grey50"),
            Panel(Text(f"{self.message}\n{HELP}", style="grey80"), border_style="grey35"),
        )

    def run(self, test: SimulationTest, live: Live) -> TestResult:
        self.status[test.key] = "running"
        self.highlight = test.key
        self.message = f"正在运行 {test.name} ..."
        frames = itertools.cycle(SPINNER_FRAMES)
        start_time = time.perf_counter()

        with ThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(test.run)
            while True:
                self.spinner[test.key] = next(frames)
                live.update(self.render())
                try:
                    result = future.result(timeout=0.1)
                    break
                except TimeoutError:
                    continue
                except Exception as exc:  # noqa: BLE001
                    result = TestResult(
                        test=test,
                        passed=False,
                        output="",
                        duration=time.perf_counter() - start_time,
                        error=exc,
                    )
                    break

        self.results[test.key] = result
        self.status[test.key] = "passed" if result.passed else "failed"
        self.message = f"{'✔' if result.passed else '✖'} {test.name} 用时 {result.duration:.2f}s"
        if not result.passed and result.error:
            self.message += f" | 错误: {result.error}"
        live.update(self.render())
        return result

    def run_many(self, tests: List[SimulationTest], live: Live) -> None:
        for test in tests:
            self.run(test, live)
        failed = sum(1 for test in tests if not self.results[test.key].passed)
        self.highlight = None
        self.message = f"已运行 {len(tests)} 个测试，失败 {failed} 个。"

    def show_log(self, test: SimulationTest, live: Live) -> None:
        result = self.results.get(test.key)
        live.stop()
        console.rule(f"日志 - {test.name}")
        if not result:
            console.print("尚未运行该测试。")
        else:
            console.print(result.output or "<无输出>", markup=False)
            if result.error:
                console.print("\n异常堆栈：", style="bold red")
                traceback.print_exception(result.error, file=sys.stdout)
        console.input("\n按回车返回菜单...")
        live.start()
        self.message = f"已查看 {test.name} 日志。"


def select(tests: List[SimulationTest], tag: str) -> List[SimulationTest]:
    return [test for test in tests if tag in test.tags]


def handle_command(cmd: str, board: Dashboard, live: Live) -> bool:
    """执行一条交互命令，返回 False 表示退出"""
    tests = board.tests
    lower_cmd = cmd.lower()

    if lower_cmd in {"q", "quit"}:
        board.message = "再见！"
        return False
    if lower_cmd in {"a", "all"}:
        board.run_many(tests, live)
    elif lower_cmd in {"r", "reset"}:
        board.reset()
        board.highlight = None
        board.message = "状态已重置。"
    elif lower_cmd.startswith("t") and len(lower_cmd) > 1:
        chosen = select(tests, lower_cmd[1:].strip())
        if chosen:
            board.run_many(chosen, live)
        else:
            board.message = f"没有带标签 {lower_cmd[1:].strip()} 的测试。"
    elif lower_cmd.startswith("l") and lower_cmd[1:].isdigit():
        idx = int(lower_cmd[1:]) - 1
        if 0 <= idx < len(tests):
            board.show_log(tests[idx], live)
        else:
            board.message = "无效的编号。"
    elif cmd.isdigit():
        idx = int(cmd) - 1
        if 0 <= idx < len(tests):
            board.run(tests[idx], live)
            board.highlight = None
        else:
            board.message = "无效的编号。"
    else:
        board.message = "未知命令，请重试。"
    return True


def run_batch(tests: List[SimulationTest]) -> int:
    """非交互模式：依次运行并打印汇总，有失败时返回1"""
    failed = 0
    for test in tests:
        result = test.run()
        icon, color, _ = STATUS_STYLE["passed" if result.passed else "failed"]
        console.print(f"[{color}]{icon}[/] {test.name} [grey50]({result.duration:.2f}s)[/] {first_error_line(result)}")
        failed += 0 if result.passed else 1
    style = "red" if failed else "green"
    console.print(f"\n[bold {style}]{len(tests) - failed}/{len(tests)} 通过[/]")
    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="pipe8 仿真回归测试")
    parser.add_argument("--batch", action="store_true", help="非交互模式，运行后直接退出")
    parser.add_argument("--tag", type=str, default=None, help="只运行带该标签的测试")
    args = parser.parse_args(argv)

    try:
        tests = collect_tests()
    except ValueError as exc:
        console.print(exc, style="red")
        return 1
    if args.tag:
        tests = select(tests, args.tag)

    if args.batch:
        return run_batch(tests)

    board = Dashboard(tests)
    with Live(board.render(), console=console, refresh_per_second=10) as live:
        while True:
            live.stop()
            try:
                cmd = console.input("[bold cyan]请输入指令 › [/]").strip()
            except (EOFError, KeyboardInterrupt):
                board.message = "已中断，退出。"
                live.start()
                live.update(board.render())
                break
            live.start()

            if not cmd:
                board.message = "输入不能为空。"
            elif not handle_command(cmd, board, live):
                live.update(board.render())
                break
            live.update(board.render())

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
