#!/usr/bin/env python3

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from amaranth.sim import Simulator

from pipe8.core.isa import RegWrite
from pipe8.memory.image import ImageFormatError, load_image, normalize_image
from pipe8.processor import Processor
from program.demo import build_demo_program

RESET_CYCLES = 2
HALT_VISITS = 3  # 自跳转循环每3拍回到同一地址
DEFAULT_MAX_CYCLES = 2000
PROJECT_ROOT = Path(__file__).resolve().parent
ANALYSIS_DIR = PROJECT_ROOT / "build" / "analysis"


@dataclass
class PortWrite:
    cycle: int
    value: int


@dataclass
class RunResult:
    cycles: int = 0
    halted: bool = False
    outputs: List[PortWrite] = field(default_factory=list)
    samples: List[Tuple[int, int]] = field(default_factory=list)
    interrupts: List[int] = field(default_factory=list)
    trace: List[Tuple[int, int, int]] = field(default_factory=list)  # (周期, PC, 取到的指令)


def run_program(
    program: Sequence[int],
    data: Sequence[int],
    *,
    max_cycles: int,
    halt_addr: Optional[int] = None,
    interrupt_at: Sequence[int] = (),
    in_port: int = 0,
    vcd_path: Optional[str] = None,
    trace: bool = False,
) -> RunResult:
    """复位后运行程序，记录输出端口的每次更新和写回级退休的指令数。"""
    dut = Processor(program=program, data=data)
    result = RunResult()
    pulses = set(interrupt_at)

    async def bench(ctx):
        ctx.set(dut.reset, 1)
        ctx.set(dut.in_port, in_port & 0xFF)
        for _ in range(RESET_CYCLES):
            await ctx.tick()
        ctx.set(dut.reset, 0)

        retired = 0
        visits = 0
        for cycle in range(max_cycles):
            # 中断线为电平信号，只拉高一拍
            ctx.set(dut.interrupt, 1 if cycle in pulses else 0)
            if cycle in pulses:
                result.interrupts.append(cycle)

            if trace:
                result.trace.append((cycle, ctx.get(dut.debug_pc), ctx.get(dut.debug_instr)))

            await ctx.tick()
            result.cycles = cycle + 1

            if ctx.get(dut.out_strobe):
                result.outputs.append(PortWrite(cycle=cycle, value=ctx.get(dut.out_port)))

            if ctx.get(dut.cpu.regfile.wr_mode.as_value()) != RegWrite.NONE.value:
                retired += 1
            result.samples.append((cycle, retired))

            if halt_addr is not None and ctx.get(dut.debug_pc) == halt_addr:
                visits += 1
                if visits >= HALT_VISITS:
                    result.halted = True
                    break

        ctx.set(dut.interrupt, 0)

    sim = Simulator(dut)
    sim.add_clock(1e-6)
    sim.add_testbench(bench)

    if vcd_path:
        with sim.write_vcd(vcd_path):
            sim.run()
    else:
        sim.run()

    if halt_addr is not None and not result.halted:
        raise RuntimeError(f"Program did not reach 0x{halt_addr:02X} within {max_cycles} cycles")

    return result


def parse_byte(text: str) -> int:
    value = int(text, 0)
    if not 0 <= value <= 0xFF:
        raise argparse.ArgumentTypeError(f"{text} does not fit in a byte")
    return value


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a program image on the pipe8 processor")
    parser.add_argument("--program", type=str, default=None, help="Instruction memory image (hex text); defaults to the demo")
    parser.add_argument("--data", type=str, default=None, help="Data memory image (hex text)")
    parser.add_argument("--max-cycles", type=int, default=DEFAULT_MAX_CYCLES, help="Maximum cycles to simulate")
    parser.add_argument("--halt-addr", type=parse_byte, default=None, help="Stop once the PC settles on this address")
    parser.add_argument(
        "--interrupt-at",
        type=int,
        action="append",
        default=[],
        help="Pulse the interrupt line at this cycle (repeatable)",
    )
    parser.add_argument("--in-port", type=parse_byte, default=0, help="Value driven on the input port")
    parser.add_argument("--vcd", type=str, default=None, help="Optional path for waveform dump")
    parser.add_argument("--trace", action="store_true", help="Print the fetch address and instruction of every cycle")
    parser.add_argument("--svg", action="store_true", help="Write a performance timeline under build/analysis")
    args = parser.parse_args(argv)

    expected: Optional[int] = None
    try:
        if args.program is None:
            artifact = build_demo_program()
            program = artifact.image.data
            data = artifact.data
            halt_addr = artifact.done_pc if args.halt_addr is None else args.halt_addr
            expected = artifact.expected_output
        else:
            program = load_image(args.program)
            data = load_image(args.data) if args.data else normalize_image([])
            halt_addr = args.halt_addr

        result = run_program(
            program,
            data,
            max_cycles=args.max_cycles,
            halt_addr=halt_addr,
            interrupt_at=args.interrupt_at,
            in_port=args.in_port,
            vcd_path=args.vcd,
            trace=args.trace,
        )
    except (ImageFormatError, OSError, RuntimeError) as exc:
        print(f"[ERROR] {exc}")
        return 1

    for cycle, pc, instr in result.trace:
        print(f"  cycle={cycle:04d} pc=0x{pc:02X} instr=0x{instr:02X}")

    if result.halted:
        print(f"Halted at 0x{halt_addr:02X} after {result.cycles} cycles.")
    else:
        print(f"Stopped after {result.cycles} cycles.")

    if result.outputs:
        print("\nOutput port writes:")
        for evt in result.outputs:
            print(f"  cycle={evt.cycle:04d} value=0x{evt.value:02X} ({evt.value})")
    else:
        print("No output port writes were observed.")

    if args.svg:
        ANALYSIS_DIR.mkdir(parents=True, exist_ok=True)
        perf_path = ANALYSIS_DIR / "performance.svg"
        generate_performance_svg(perf_path, result)
        print(f"\n性能分析图已生成: {perf_path}")

    if expected is not None:
        final = result.outputs[-1].value if result.outputs else None
        if final != expected:
            print(f"[ERROR] demo expected output 0x{expected:02X}, got {final}")
            return 1

    return 0


def generate_performance_svg(path: Path, result: RunResult) -> None:
    if not result.samples:
        return

    width, height = 960, 360
    margin = 60
    max_cycle = max(c for c, _ in result.samples) or 1
    max_retired = max(r for _, r in result.samples) or 1

    def sx(cycle: int) -> float:
        return margin + (cycle / max_cycle) * (width - 2 * margin)

    def sy(value: int) -> float:
        return height - margin - (value / max_retired) * (height - 2 * margin)

    parts = [
        f"<svg xmlns='http://www.w3.org/2000/svg' width='{width}' height='{height}' viewBox='0 0 {width} {height}'>",
        "  <style>text{font-family:Consolas,Monaco,monospace;font-size:14px;}</style>",
        f"  <line x1='{margin}' y1='{height - margin}' x2='{width - margin}' y2='{height - margin}' stroke='black' stroke-width='2'/>",
        f"  <line x1='{margin}' y1='{margin}' x2='{margin}' y2='{height - margin}' stroke='black' stroke-width='2'/>",
        f"  <text x='{width - margin}' y='{height - margin + 30}' text-anchor='end'>Cycles (0~{max_cycle})</text>",
    ]

    points = " ".join(f"{sx(c):.2f},{sy(r):.2f}" for c, r in result.samples)
    parts.append(f"  <polyline fill='none' stroke='#2E7D32' stroke-width='2.5' points='{points}'/>")

    # 输出端口写入：蓝色虚线；中断脉冲：红点
    for evt in result.outputs:
        x = sx(evt.cycle)
        parts.append(
            f"  <line x1='{x:.2f}' y1='{margin}' x2='{x:.2f}' y2='{height - margin}' stroke='#0D47A1' stroke-width='1.5' stroke-dasharray='4 4'/>"
        )
        parts.append(f"  <text x='{x + 3:.2f}' y='{margin + 15}' fill='#0D47A1' font-size='12'>OUT 0x{evt.value:02X}</text>")

    for cycle in result.interrupts:
        x = sx(cycle)
        parts.append(f"  <circle cx='{x:.2f}' cy='{height - margin:.2f}' r='5' fill='#C62828'/>")

    parts.append("</svg>")

    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(parts))


if __name__ == "__main__":
    sys.exit(main())
