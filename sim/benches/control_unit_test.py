"""
控制时序器测试

直接驱动译码级输入，检查组合控制信号与微状态：
1. 单周期指令的操作数/写回选择
2. 条件跳转只在条件成立时冲刷，且从不暂停取指
3. LDM/LDD/STD 的第二周期由微状态决定
4. RET/RTI 的两个周期，以及 RET 第二周期推迟中断
5. 中断入口覆盖当前指令；保留编码不产生副作用
"""

from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pipe8.core.control_unit import ControlUnit
from pipe8.core.isa import (
    AddrSel,
    AluOp,
    BranchOp,
    JumpCond,
    LinkSel,
    MemoryOp,
    Opcode,
    PcSel,
    RegWrite,
    SequencerState,
    SpSel,
    StackOp,
    WbSel,
    encode,
)
from sim.test_utils import SimulationSpec, SimulationTest, read_enum, run_tests_cli


def build_control_unit_spec() -> SimulationSpec:
    dut = ControlUnit()
    ctrl = dut.control

    def snapshot(ctx):
        return {
            "src1": ctx.get(ctrl.src1) if ctx.get(ctrl.src1_valid) else None,
            "src2": ctx.get(ctrl.src2) if ctx.get(ctrl.src2_valid) else None,
            "dest": ctx.get(ctrl.dest),
            "reg_write": read_enum(ctx, ctrl.reg_write, RegWrite),
            "alu_op": read_enum(ctx, ctrl.alu_op, AluOp),
            "flag_write": ctx.get(ctrl.flag_write),
            "pc_sel": read_enum(ctx, ctrl.pc_sel, PcSel),
            "mem_read": ctx.get(ctrl.mem_read),
            "mem_write": ctx.get(ctrl.mem_write),
            "hold": ctx.get(dut.flow_hold),
            "flush": ctx.get(dut.flow_flush),
        }

    def state(ctx):
        return read_enum(ctx, dut.state, SequencerState)

    async def bench(ctx):
        ctx.set(dut.reset, 1)
        await ctx.tick()
        ctx.set(dut.reset, 0)

        # ========== 单周期指令 ==========
        print("【测试1】ADD R1, R2")
        ctx.set(dut.instruction, encode(Opcode.ADD, 1, 2))
        s = snapshot(ctx)
        print(f"  {s}")
        assert s["src1"] == 1 and s["src2"] == 2
        assert s["dest"] == 1 and s["reg_write"] == RegWrite.DEST
        assert s["alu_op"] == AluOp.ADD and s["flag_write"] == 1
        assert s["pc_sel"] == PcSel.NEXT and not s["hold"] and not s["flush"]

        print("【测试2】MOV 与 LOOP 不写标志")
        ctx.set(dut.instruction, encode(Opcode.MOV, 2, 0))
        s = snapshot(ctx)
        assert s["src2"] == 0 and s["dest"] == 2 and s["flag_write"] == 0

        ctx.set(dut.instruction, encode(Opcode.LOOP, 1, 2))
        s = snapshot(ctx)
        assert s["src1"] == 2 and s["src2"] == 1 and s["dest"] == 1
        assert s["alu_op"] == AluOp.DEC and s["flag_write"] == 0
        assert ctx.get(ctrl.loop) == 1
        assert s["pc_sel"] == PcSel.BRANCH and s["hold"] and s["flush"]

        print("【测试3】PUSH / POP / IN / OUT")
        ctx.set(dut.instruction, encode(Opcode.STACK, StackOp.PUSH, 1))
        s = snapshot(ctx)
        assert s["src1"] == 1 and s["src2"] == 3 and s["mem_write"] == 1
        assert s["reg_write"] == RegWrite.SP
        assert read_enum(ctx, ctrl.sp_sel, SpSel) == SpSel.DEC
        assert read_enum(ctx, ctrl.addr_sel, AddrSel) == AddrSel.STACK

        ctx.set(dut.instruction, encode(Opcode.STACK, StackOp.POP, 2))
        s = snapshot(ctx)
        assert s["reg_write"] == RegWrite.BOTH and s["dest"] == 2 and s["mem_read"] == 1
        assert read_enum(ctx, ctrl.addr_sel, AddrSel) == AddrSel.STACK_NEXT
        assert read_enum(ctx, ctrl.wb_sel, WbSel) == WbSel.MEMORY

        ctx.set(dut.instruction, encode(Opcode.STACK, StackOp.IN, 0))
        assert read_enum(ctx, ctrl.wb_sel, WbSel) == WbSel.INPUT

        ctx.set(dut.instruction, encode(Opcode.STACK, StackOp.OUT, 2))
        s = snapshot(ctx)
        assert ctx.get(ctrl.port_write) == 1 and s["src1"] == 2
        assert s["reg_write"] == RegWrite.NONE

        # ========== 条件跳转 ==========
        print("【测试4】JZ 条件不成立/成立")
        ctx.set(dut.instruction, encode(Opcode.JCOND, JumpCond.JZ, 2))
        ctx.set(dut.flags, {"zero": 0})
        s = snapshot(ctx)
        assert s["pc_sel"] == PcSel.NEXT and not s["flush"] and s["src1"] is None

        ctx.set(dut.flags, {"zero": 1})
        s = snapshot(ctx)
        assert s["pc_sel"] == PcSel.BRANCH and s["flush"] and not s["hold"]
        assert s["src1"] == 2

        ctx.set(dut.instruction, encode(Opcode.JCOND, JumpCond.JV, 0))
        ctx.set(dut.flags, {"zero": 1, "carry": 1})
        assert snapshot(ctx)["pc_sel"] == PcSel.NEXT
        ctx.set(dut.flags, {"overflow": 1})
        assert snapshot(ctx)["pc_sel"] == PcSel.BRANCH
        ctx.set(dut.flags, {})

        # ========== 双字指令 ==========
        print("【测试5】LDM R2 两个周期")
        ctx.set(dut.instruction, encode(Opcode.MEMORY, MemoryOp.LDM, 2))
        assert ctx.get(dut.capture_operand) == 1
        assert snapshot(ctx)["reg_write"] == RegWrite.NONE
        await ctx.tick()
        assert state(ctx) == SequencerState.LDM
        assert ctx.get(dut.pending_reg) == 2

        # 第二周期：取到的字作为立即数，操作码为 NOP
        ctx.set(dut.instruction, 0)
        s = snapshot(ctx)
        assert s["dest"] == 2 and s["reg_write"] == RegWrite.DEST
        assert read_enum(ctx, ctrl.wb_sel, WbSel) == WbSel.IMMEDIATE
        await ctx.tick()
        assert state(ctx) == SequencerState.IDLE

        print("【测试6】STD R1 读出源寄存器")
        ctx.set(dut.instruction, encode(Opcode.MEMORY, MemoryOp.STD, 1))
        await ctx.tick()
        ctx.set(dut.instruction, 0)
        s = snapshot(ctx)
        assert state(ctx) == SequencerState.STD
        assert s["src1"] == 1 and s["mem_write"] == 1 and s["reg_write"] == RegWrite.NONE
        assert read_enum(ctx, ctrl.addr_sel, AddrSel) == AddrSel.IMMEDIATE
        await ctx.tick()

        print("【测试7】暂停时微状态保持")
        ctx.set(dut.instruction, encode(Opcode.MEMORY, MemoryOp.LDD, 0))
        ctx.set(dut.stall, 1)
        await ctx.tick()
        assert state(ctx) == SequencerState.IDLE
        ctx.set(dut.stall, 0)
        await ctx.tick()
        assert state(ctx) == SequencerState.LDD
        ctx.set(dut.instruction, 0)
        s = snapshot(ctx)
        assert s["mem_read"] == 1 and s["dest"] == 0
        await ctx.tick()

        # ========== RET / RTI ==========
        print("【测试8】RET 第一周期出栈，第二周期改写PC并推迟中断")
        ctx.set(dut.instruction, encode(Opcode.BRANCH, BranchOp.RET))
        s = snapshot(ctx)
        assert s["src2"] == 3 and s["mem_read"] == 1 and s["reg_write"] == RegWrite.SP
        assert read_enum(ctx, ctrl.sp_sel, SpSel) == SpSel.INC
        assert s["hold"] and s["flush"]
        assert ctx.get(ctrl.restore_flags) == 0
        await ctx.tick()

        ctx.set(dut.instruction, 0)
        ctx.set(dut.interrupt, 1)
        assert state(ctx) == SequencerState.RET
        s = snapshot(ctx)
        assert s["pc_sel"] == PcSel.RETURN
        assert ctx.get(dut.interrupt_taken) == 0, "RET 第二周期不响应中断"
        ctx.set(dut.interrupt, 0)
        await ctx.tick()
        assert state(ctx) == SequencerState.IDLE

        ctx.set(dut.instruction, encode(Opcode.BRANCH, BranchOp.RTI))
        assert ctx.get(ctrl.restore_flags) == 1

        # ========== 中断入口 ==========
        print("【测试9】中断覆盖 ADD")
        ctx.set(dut.instruction, encode(Opcode.ADD, 0, 1))
        ctx.set(dut.interrupt, 1)
        s = snapshot(ctx)
        assert ctx.get(dut.interrupt_taken) == 1
        assert s["flag_write"] == 0 and s["dest"] == 0
        assert s["reg_write"] == RegWrite.SP and s["mem_write"] == 1 and s["src2"] == 3
        assert read_enum(ctx, ctrl.link_sel, LinkSel) == LinkSel.PC
        assert ctx.get(ctrl.save_flags) == 1 and s["flush"]

        # 中断也覆盖双字指令的第一个字
        ctx.set(dut.instruction, encode(Opcode.MEMORY, MemoryOp.LDM, 1))
        assert ctx.get(dut.capture_operand) == 0
        await ctx.tick()
        ctx.set(dut.interrupt, 0)
        assert state(ctx) == SequencerState.IDLE

        # ========== 保留编码 ==========
        print("【测试10】保留编码按 NOP 处理")
        for instr in (encode(Opcode.RESERVED, 3, 3), encode(Opcode.MEMORY, 3, 1), 0x00):
            ctx.set(dut.instruction, instr)
            s = snapshot(ctx)
            assert s["reg_write"] == RegWrite.NONE and not s["mem_write"] and not s["mem_read"]
            assert s["pc_sel"] == PcSel.NEXT and not s["flush"]
            assert ctx.get(dut.capture_operand) == 0
        await ctx.tick()
        assert state(ctx) == SequencerState.IDLE

        print("\n✅ 控制时序器测试通过")

    return SimulationSpec(dut=dut, bench=bench, vcd_path="control_unit.vcd")


def get_tests() -> list[SimulationTest]:
    return [
        SimulationTest(
            key="control_unit",
            name="Control Sequencer Decode",
            description="单周期译码、条件跳转、双字指令微状态、RET/RTI与中断入口。",
            build=build_control_unit_spec,
            tags=("decode", "unit"),
        )
    ]


def main() -> int:
    return run_tests_cli(get_tests())


if __name__ == "__main__":
    raise SystemExit(main())
