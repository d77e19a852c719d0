from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out

from .isa import (
    SP_INDEX,
    AddrSel,
    AluOp,
    BranchOp,
    DataSel,
    Flags,
    JumpCond,
    LinkSel,
    MemoryOp,
    Opcode,
    PcSel,
    RegWrite,
    SequencerState,
    ShiftOp,
    SpSel,
    StackOp,
    UnaryOp,
    WbSel,
)
from .pipeline import ControlBus


class ControlUnit(wiring.Component):
    """
    控制时序器（译码级）

    功能：把 (指令, 有效标志位, 中断线, 微状态) 组合译码成整条流水线的控制信号
    - 中断入口优先级最高，覆盖当前指令（RET第二周期除外，中断推迟一拍）
    - LDM/LDD/STD 第一周期请求捕获下一个字，第二周期由微状态而非操作码决定动作
    - RET/RTI 第一周期出栈读地址，第二周期在执行级用读出的地址改写PC

    注意：唯一的时序状态是 state/pending_reg，译码级暂停时保持不变
    """

    instruction: In(8)
    flags: In(Flags)  # 有效标志位（执行级正在写标志时取ALU结果）
    interrupt: In(1)
    stall: In(1)
    reset: In(1)

    control: Out(ControlBus())
    capture_operand: Out(1)  # 下一拍把取到的字存为立即数
    flow_hold: Out(1)  # 取指需等待执行级重定向
    flow_flush: Out(1)  # 丢弃正在取指的指令
    interrupt_taken: Out(1)

    state: Out(SequencerState)
    pending_reg: Out(2)  # 双字指令的目标/源寄存器

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        ctrl = self.control
        opcode = self.instruction[4:8]
        ra = self.instruction[2:4]
        rb = self.instruction[0:2]

        next_state = Signal(SequencerState)
        next_pending = Signal(2)
        m.d.comb += next_pending.eq(self.pending_reg)

        with m.If(self.reset):
            m.d.sync += [
                self.state.eq(SequencerState.IDLE),
                self.pending_reg.eq(0),
            ]
        with m.Elif(~self.stall):
            m.d.sync += [
                self.state.eq(next_state),
                self.pending_reg.eq(next_pending),
            ]

        # 操作数A：跳转目标、写存数据、LDI/STI地址；操作数B：栈指针或单操作数
        def read_a(reg):
            m.d.comb += [ctrl.src1.eq(reg), ctrl.src1_valid.eq(1)]

        def read_b(reg):
            m.d.comb += [ctrl.src2.eq(reg), ctrl.src2_valid.eq(1)]

        def write_dest(reg, mode=RegWrite.DEST):
            m.d.comb += [ctrl.dest.eq(reg), ctrl.reg_write.eq(mode)]

        def redirect(*, hold=True):
            m.d.comb += [ctrl.pc_sel.eq(PcSel.BRANCH), self.flow_flush.eq(1)]
            if hold:
                m.d.comb += self.flow_hold.eq(1)

        # 电平触发：中断线保持高电平的每一拍都会再次进入中断，RET/RTI 的第二周期除外
        interrupt_request = Signal()
        m.d.comb += interrupt_request.eq(self.interrupt & (self.state != SequencerState.RET))

        with m.If(interrupt_request):
            # 中断入口：mem[SP] <- 返回PC, SP <- SP-1, 保存CCR, PC <- imem[1]
            read_b(SP_INDEX)
            m.d.comb += [
                ctrl.reg_write.eq(RegWrite.SP),
                ctrl.sp_sel.eq(SpSel.DEC),
                ctrl.mem_write.eq(1),
                ctrl.addr_sel.eq(AddrSel.STACK),
                ctrl.link_sel.eq(LinkSel.PC),
                ctrl.save_flags.eq(1),
                self.flow_flush.eq(1),
                self.interrupt_taken.eq(1),
            ]

        # ========== 第二周期（操作码为NOP，按微状态译码） ==========
        with m.Elif(self.state == SequencerState.LDM):
            write_dest(self.pending_reg)
            m.d.comb += ctrl.wb_sel.eq(WbSel.IMMEDIATE)

        with m.Elif(self.state == SequencerState.LDD):
            write_dest(self.pending_reg)
            m.d.comb += [
                ctrl.mem_read.eq(1),
                ctrl.addr_sel.eq(AddrSel.IMMEDIATE),
                ctrl.wb_sel.eq(WbSel.MEMORY),
            ]

        with m.Elif(self.state == SequencerState.STD):
            read_a(self.pending_reg)
            m.d.comb += [
                ctrl.mem_write.eq(1),
                ctrl.addr_sel.eq(AddrSel.IMMEDIATE),
                ctrl.data_sel.eq(DataSel.OPERAND_A),
            ]

        with m.Elif(self.state == SequencerState.RET):
            # RET/RTI此时位于执行级之后的访存级，读出的地址在执行级写入PC
            m.d.comb += [
                ctrl.pc_sel.eq(PcSel.RETURN),
                self.flow_hold.eq(1),
                self.flow_flush.eq(1),
            ]

        # ========== 按操作码译码 ==========
        with m.Else():
            with m.Switch(opcode):
                with m.Case(Opcode.MOV):
                    read_b(rb)
                    write_dest(ra)
                    m.d.comb += ctrl.alu_op.eq(AluOp.MOV)

                with m.Case(Opcode.ADD, Opcode.SUB, Opcode.AND, Opcode.OR):
                    read_a(ra)
                    read_b(rb)
                    write_dest(ra)
                    m.d.comb += ctrl.flag_write.eq(1)
                    with m.Switch(opcode):
                        with m.Case(Opcode.ADD):
                            m.d.comb += ctrl.alu_op.eq(AluOp.ADD)
                        with m.Case(Opcode.SUB):
                            m.d.comb += ctrl.alu_op.eq(AluOp.SUB)
                        with m.Case(Opcode.AND):
                            m.d.comb += ctrl.alu_op.eq(AluOp.AND)
                        with m.Case(Opcode.OR):
                            m.d.comb += ctrl.alu_op.eq(AluOp.OR)

                with m.Case(Opcode.SHIFT):
                    m.d.comb += ctrl.flag_write.eq(1)
                    with m.Switch(ra):
                        with m.Case(ShiftOp.RLC):
                            read_b(rb)
                            write_dest(rb)
                            m.d.comb += ctrl.alu_op.eq(AluOp.RLC)
                        with m.Case(ShiftOp.RRC):
                            read_b(rb)
                            write_dest(rb)
                            m.d.comb += ctrl.alu_op.eq(AluOp.RRC)
                        with m.Case(ShiftOp.SETC):
                            # 结果为A，不写寄存器；Z/N 由 rb 的值重新计算
                            read_a(rb)
                            m.d.comb += ctrl.alu_op.eq(AluOp.SETC)
                        with m.Case(ShiftOp.CLRC):
                            read_a(rb)
                            m.d.comb += ctrl.alu_op.eq(AluOp.CLRC)

                with m.Case(Opcode.STACK):
                    with m.Switch(ra):
                        with m.Case(StackOp.PUSH):
                            # mem[SP] <- rb, SP <- SP-1
                            read_a(rb)
                            read_b(SP_INDEX)
                            m.d.comb += [
                                ctrl.reg_write.eq(RegWrite.SP),
                                ctrl.sp_sel.eq(SpSel.DEC),
                                ctrl.mem_write.eq(1),
                                ctrl.addr_sel.eq(AddrSel.STACK),
                                ctrl.data_sel.eq(DataSel.OPERAND_A),
                            ]
                        with m.Case(StackOp.POP):
                            # SP <- SP+1, rb <- mem[SP+1]
                            read_b(SP_INDEX)
                            write_dest(rb, RegWrite.BOTH)
                            m.d.comb += [
                                ctrl.sp_sel.eq(SpSel.INC),
                                ctrl.mem_read.eq(1),
                                ctrl.addr_sel.eq(AddrSel.STACK_NEXT),
                                ctrl.wb_sel.eq(WbSel.MEMORY),
                            ]
                        with m.Case(StackOp.OUT):
                            read_a(rb)
                            m.d.comb += ctrl.port_write.eq(1)
                        with m.Case(StackOp.IN):
                            write_dest(rb)
                            m.d.comb += ctrl.wb_sel.eq(WbSel.INPUT)

                with m.Case(Opcode.UNARY):
                    read_b(rb)
                    write_dest(rb)
                    m.d.comb += ctrl.flag_write.eq(1)
                    with m.Switch(ra):
                        with m.Case(UnaryOp.NOT):
                            m.d.comb += ctrl.alu_op.eq(AluOp.NOT)
                        with m.Case(UnaryOp.NEG):
                            m.d.comb += ctrl.alu_op.eq(AluOp.NEG)
                        with m.Case(UnaryOp.INC):
                            m.d.comb += ctrl.alu_op.eq(AluOp.INC)
                        with m.Case(UnaryOp.DEC):
                            m.d.comb += ctrl.alu_op.eq(AluOp.DEC)

                with m.Case(Opcode.JCOND):
                    # 条件跳转不暂停取指：继续顺序取指，真正跳转时才冲刷
                    taken = Signal()
                    with m.Switch(ra):
                        with m.Case(JumpCond.JZ):
                            m.d.comb += taken.eq(self.flags.zero)
                        with m.Case(JumpCond.JN):
                            m.d.comb += taken.eq(self.flags.negative)
                        with m.Case(JumpCond.JC):
                            m.d.comb += taken.eq(self.flags.carry)
                        with m.Case(JumpCond.JV):
                            m.d.comb += taken.eq(self.flags.overflow)
                    with m.If(taken):
                        read_a(rb)
                        redirect(hold=False)

                with m.Case(Opcode.LOOP):
                    # ra <- ra-1，结果非零时跳转到 rb
                    read_a(rb)
                    read_b(ra)
                    write_dest(ra)
                    m.d.comb += [
                        ctrl.alu_op.eq(AluOp.DEC),
                        ctrl.loop.eq(1),
                    ]
                    redirect()

                with m.Case(Opcode.BRANCH):
                    with m.Switch(ra):
                        with m.Case(BranchOp.JMP):
                            read_a(rb)
                            redirect()
                        with m.Case(BranchOp.CALL):
                            # mem[SP] <- PC+1, SP <- SP-1, PC <- rb
                            read_a(rb)
                            read_b(SP_INDEX)
                            m.d.comb += [
                                ctrl.reg_write.eq(RegWrite.SP),
                                ctrl.sp_sel.eq(SpSel.DEC),
                                ctrl.mem_write.eq(1),
                                ctrl.addr_sel.eq(AddrSel.STACK),
                                ctrl.link_sel.eq(LinkSel.PC_NEXT),
                            ]
                            redirect()
                        with m.Case(BranchOp.RET, BranchOp.RTI):
                            # 第一周期：SP <- SP+1，读 mem[SP+1]
                            read_b(SP_INDEX)
                            m.d.comb += [
                                ctrl.reg_write.eq(RegWrite.SP),
                                ctrl.sp_sel.eq(SpSel.INC),
                                ctrl.mem_read.eq(1),
                                ctrl.addr_sel.eq(AddrSel.STACK_NEXT),
                                ctrl.restore_flags.eq(ra == BranchOp.RTI),
                                self.flow_hold.eq(1),
                                self.flow_flush.eq(1),
                                next_state.eq(SequencerState.RET),
                            ]

                with m.Case(Opcode.MEMORY):
                    with m.Switch(ra):
                        with m.Case(MemoryOp.LDM):
                            m.d.comb += next_state.eq(SequencerState.LDM)
                        with m.Case(MemoryOp.LDD):
                            m.d.comb += next_state.eq(SequencerState.LDD)
                        with m.Case(MemoryOp.STD):
                            m.d.comb += next_state.eq(SequencerState.STD)
                    # ra=3 保留：不捕获，按NOP处理
                    with m.If(ra != 3):
                        m.d.comb += [
                            self.capture_operand.eq(1),
                            next_pending.eq(rb),
                        ]

                with m.Case(Opcode.LDI):
                    # rb <- mem[ra]
                    read_a(ra)
                    write_dest(rb)
                    m.d.comb += [
                        ctrl.mem_read.eq(1),
                        ctrl.addr_sel.eq(AddrSel.OPERAND_A),
                        ctrl.wb_sel.eq(WbSel.MEMORY),
                    ]

                with m.Case(Opcode.STI):
                    # mem[rb] <- ra
                    read_a(rb)
                    read_b(ra)
                    m.d.comb += [
                        ctrl.mem_write.eq(1),
                        ctrl.addr_sel.eq(AddrSel.OPERAND_A),
                        ctrl.data_sel.eq(DataSel.OPERAND_B),
                    ]

                # NOP 与保留操作码 1111 没有任何副作用

        return m
