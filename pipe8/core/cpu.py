from amaranth import *
from amaranth.lib import enum, wiring
from amaranth.lib.wiring import In, Out, Signature, connect

from .alu import ALU
from .control_unit import ControlUnit
from .hazard import HazardUnit
from .isa import (
    AddrSel,
    DataSel,
    Flags,
    ForwardSel,
    LinkSel,
    PcSel,
    SequencerState,
    SpSel,
    WbSel,
)
from .pipeline import (
    DecodeExecuteRegister,
    DecodeStageBus,
    ExecuteMemoryRegister,
    ExecuteStageBus,
    FetchDecodeRegister,
    FetchStageBus,
    MemoryStageBus,
    MemoryWriteBackRegister,
    WriteBackBus,
    _connect_interface,
)
from .register_file import ConditionCodeRegister, RegFile


class PcSource(enum.Enum, shape=3):
    """取指级PC多路选择（仅在取指级内部使用）"""

    SEQUENTIAL = 0
    HOLD = 1
    REDIRECT = 2
    INTERRUPT = 3
    RESET = 4


class ProgramCounter(wiring.Component):
    """程序计数器：复位 > 中断 > 执行级重定向 > 暂停 > 顺序"""

    reset: In(1)
    stall: In(1)
    interrupt: In(1)
    redirect: In(1)
    target: In(8)
    reset_vector: In(8)
    interrupt_vector: In(8)

    addr_out: Out(8)
    source: Out(PcSource)

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        pc_reg = Signal(8)
        m.d.comb += self.addr_out.eq(pc_reg)

        with m.If(self.reset):
            m.d.comb += self.source.eq(PcSource.RESET)
        with m.Elif(self.interrupt):
            m.d.comb += self.source.eq(PcSource.INTERRUPT)
        with m.Elif(self.redirect):
            m.d.comb += self.source.eq(PcSource.REDIRECT)
        with m.Elif(self.stall):
            m.d.comb += self.source.eq(PcSource.HOLD)
        with m.Else():
            m.d.comb += self.source.eq(PcSource.SEQUENTIAL)

        with m.Switch(self.source):
            with m.Case(PcSource.RESET):
                m.d.sync += pc_reg.eq(self.reset_vector)
            with m.Case(PcSource.INTERRUPT):
                m.d.sync += pc_reg.eq(self.interrupt_vector)
            with m.Case(PcSource.REDIRECT):
                m.d.sync += pc_reg.eq(self.target)
            with m.Case(PcSource.SEQUENTIAL):
                # 8位地址自然回绕
                m.d.sync += pc_reg.eq(pc_reg + 1)

        return m


class InstructionFetchStage(wiring.Component):
    """Instruction Fetch 阶段：按 PC 取出一个字节。"""

    pc_current: In(8)
    imem_addr: Out(8)
    imem_data_in: In(8)

    output: Out(FetchStageBus())

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        m.d.comb += [
            self.imem_addr.eq(self.pc_current),
            self.output.instruction.eq(self.imem_data_in),
            self.output.immediate.eq(0),
            self.output.pc.eq(self.pc_current),
            self.output.valid.eq(1),
        ]

        return m


class InstructionDecodeStage(wiring.Component):
    """Instruction Decode 阶段：选择有效标志位、计算中断返回地址并调用控制时序器。"""

    input: In(FetchStageBus())

    ccr_flags: In(Flags)
    ex_flags: In(Flags)
    ex_flag_write: In(1)

    # 中断返回地址计算所需
    fetch_pc: In(8)
    ex_redirect: In(1)
    ex_target: In(8)

    interrupt: In(1)
    stall: In(1)
    reset: In(1)

    output: Out(DecodeStageBus())
    capture_operand: Out(1)
    flow_hold: Out(1)
    flow_flush: Out(1)
    interrupt_taken: Out(1)

    def __init__(self):
        super().__init__()
        self.control_unit = ControlUnit()

    def elaborate(self, platform):
        m = Module()
        m.submodules.control_unit = cu = self.control_unit

        # 执行级正在写标志时，条件跳转使用本拍的ALU标志
        effective_flags = Signal(Flags)
        with m.If(self.ex_flag_write):
            m.d.comb += effective_flags.eq(self.ex_flags)
        with m.Else():
            m.d.comb += effective_flags.eq(self.ccr_flags)

        m.d.comb += [
            cu.instruction.eq(self.input.instruction),
            cu.flags.eq(effective_flags),
            cu.interrupt.eq(self.interrupt),
            cu.stall.eq(self.stall),
            cu.reset.eq(self.reset),
            self.capture_operand.eq(cu.capture_operand),
            self.flow_hold.eq(cu.flow_hold),
            self.flow_flush.eq(cu.flow_flush),
            self.interrupt_taken.eq(cu.interrupt_taken),
        ]

        _connect_interface(m, cu.control, self.output)

        # 中断丢弃译码级的指令，压栈的返回地址使其在RTI后重新取指
        two_word_pending = (
            (cu.state == SequencerState.LDM)
            | (cu.state == SequencerState.LDD)
            | (cu.state == SequencerState.STD)
        )
        resume_pc = Signal(8)
        with m.If(two_word_pending):
            # 从双字指令的第一个字重新开始
            m.d.comb += resume_pc.eq(self.input.pc - 1)
        with m.Elif(self.input.valid):
            m.d.comb += resume_pc.eq(self.input.pc)
        with m.Elif(self.ex_redirect):
            m.d.comb += resume_pc.eq(self.ex_target)
        with m.Else():
            m.d.comb += resume_pc.eq(self.fetch_pc)

        with m.If(cu.interrupt_taken):
            m.d.comb += self.output.pc.eq(resume_pc)
        with m.Else():
            m.d.comb += self.output.pc.eq(self.input.pc)

        m.d.comb += self.output.immediate.eq(self.input.immediate)

        return m


class ForwardingValueBus(Signature):
    """可转发的数据：访存级/写回级的目标寄存器值与栈指针值。"""

    def __init__(self):
        super().__init__(
            {
                "mem_result": Out(8),
                "mem_stack": Out(8),
                "wb_result": Out(8),
                "wb_stack": Out(8),
            }
        )


class ExecuteStage(wiring.Component):
    """Execute 阶段：读寄存器、转发、ALU 计算、栈指针更新和跳转判定。"""

    input: In(DecodeStageBus())
    output: Out(ExecuteStageBus())

    # 寄存器文件读口
    rd_addr0: Out(2)
    rd_data0: In(8)
    rd_addr1: Out(2)
    rd_data1: In(8)

    # 转发选择（来自HazardUnit）与转发数据
    forward_a: In(ForwardSel)
    forward_b: In(ForwardSel)
    forwarding: In(ForwardingValueBus())

    in_port: In(8)
    return_addr: In(8)  # 访存级读出的返回地址

    redirect: Out(1)
    target: Out(8)

    # CCR 控制
    alu_flags: Out(Flags)
    flag_write: Out(1)
    save_flags: Out(1)
    restore_flags: Out(1)

    port_write: Out(1)
    port_data: Out(8)

    def __init__(self):
        super().__init__()
        self.alu = ALU()

    def elaborate(self, platform):
        m = Module()
        m.submodules.alu = alu = self.alu

        ctrl = self.input
        fwd = self.forwarding

        m.d.comb += [
            self.rd_addr0.eq(ctrl.src1),
            self.rd_addr1.eq(ctrl.src2),
        ]

        def forwarded(select, fallback):
            value = Signal(8)
            with m.Switch(select):
                with m.Case(ForwardSel.MEM_RESULT):
                    m.d.comb += value.eq(fwd.mem_result)
                with m.Case(ForwardSel.MEM_STACK):
                    m.d.comb += value.eq(fwd.mem_stack)
                with m.Case(ForwardSel.WB_RESULT):
                    m.d.comb += value.eq(fwd.wb_result)
                with m.Case(ForwardSel.WB_STACK):
                    m.d.comb += value.eq(fwd.wb_stack)
                with m.Default():
                    m.d.comb += value.eq(fallback)
            return value

        operand_a = forwarded(self.forward_a, self.rd_data0)
        operand_b = forwarded(self.forward_b, self.rd_data1)

        m.d.comb += [
            alu.a.eq(operand_a),
            alu.b.eq(operand_b),
            alu.op.eq(ctrl.alu_op),
        ]

        # 栈指针：B 口上是当前 SP
        sp_next = Signal(8)
        with m.Switch(ctrl.sp_sel):
            with m.Case(SpSel.INC):
                m.d.comb += sp_next.eq(operand_b + 1)
            with m.Case(SpSel.DEC):
                m.d.comb += sp_next.eq(operand_b - 1)
            with m.Default():
                m.d.comb += sp_next.eq(operand_b)

        result = Signal(8)
        with m.Switch(ctrl.wb_sel):
            with m.Case(WbSel.IMMEDIATE):
                m.d.comb += result.eq(ctrl.immediate)
            with m.Case(WbSel.INPUT):
                m.d.comb += result.eq(self.in_port)
            with m.Default():
                m.d.comb += result.eq(alu.result)

        # 跳转判定
        with m.Switch(ctrl.pc_sel):
            with m.Case(PcSel.BRANCH):
                m.d.comb += [
                    self.redirect.eq(~ctrl.loop | (alu.result != 0)),
                    self.target.eq(operand_a),
                ]
            with m.Case(PcSel.RETURN):
                m.d.comb += [
                    self.redirect.eq(1),
                    self.target.eq(self.return_addr),
                ]

        m.d.comb += [
            self.alu_flags.eq(alu.flags),
            self.flag_write.eq(ctrl.flag_write),
            self.save_flags.eq(ctrl.save_flags),
            self.restore_flags.eq(ctrl.restore_flags),
            self.port_write.eq(ctrl.port_write),
            self.port_data.eq(operand_a),
        ]

        m.d.comb += [
            self.output.result.eq(result),
            self.output.operand_a.eq(operand_a),
            self.output.operand_b.eq(operand_b),
            self.output.sp_next.eq(sp_next),
            self.output.immediate.eq(ctrl.immediate),
            self.output.pc.eq(ctrl.pc),
            self.output.dest.eq(ctrl.dest),
            self.output.reg_write.eq(ctrl.reg_write),
            self.output.mem_read.eq(ctrl.mem_read),
            self.output.mem_write.eq(ctrl.mem_write),
            self.output.addr_sel.eq(ctrl.addr_sel),
            self.output.data_sel.eq(ctrl.data_sel),
            self.output.link_sel.eq(ctrl.link_sel),
            self.output.wb_sel.eq(ctrl.wb_sel),
        ]

        return m


class MemoryStage(wiring.Component):
    """Memory 阶段：选择地址与写入数据，与数据存储器交互。"""

    input: In(ExecuteStageBus())

    # 外部内存接口
    mem_addr_out: Out(8)
    mem_write_data_out: Out(8)
    mem_write_en_out: Out(1)
    mem_read_data_in: In(8)

    reset: In(1)

    output: Out(MemoryStageBus())
    forward_value: Out(8)  # 本级将要写回目标寄存器的值

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        stage = self.input

        with m.Switch(stage.addr_sel):
            with m.Case(AddrSel.STACK):
                m.d.comb += self.mem_addr_out.eq(stage.operand_b)
            with m.Case(AddrSel.STACK_NEXT):
                m.d.comb += self.mem_addr_out.eq(stage.sp_next)
            with m.Case(AddrSel.IMMEDIATE):
                m.d.comb += self.mem_addr_out.eq(stage.immediate)
            with m.Default():
                m.d.comb += self.mem_addr_out.eq(stage.operand_a)

        # CALL压PC+1，中断入口压返回PC
        with m.If(stage.link_sel == LinkSel.PC_NEXT):
            m.d.comb += self.mem_write_data_out.eq(stage.pc + 1)
        with m.Elif(stage.link_sel == LinkSel.PC):
            m.d.comb += self.mem_write_data_out.eq(stage.pc)
        with m.Elif(stage.data_sel == DataSel.OPERAND_B):
            m.d.comb += self.mem_write_data_out.eq(stage.operand_b)
        with m.Else():
            m.d.comb += self.mem_write_data_out.eq(stage.operand_a)

        m.d.comb += self.mem_write_en_out.eq(stage.mem_write & ~self.reset)

        with m.If(stage.mem_read):
            m.d.comb += self.output.load_data.eq(self.mem_read_data_in)

        with m.If(stage.wb_sel == WbSel.MEMORY):
            m.d.comb += self.forward_value.eq(self.output.load_data)
        with m.Else():
            m.d.comb += self.forward_value.eq(stage.result)

        m.d.comb += [
            self.output.result.eq(stage.result),
            self.output.sp_next.eq(stage.sp_next),
            self.output.dest.eq(stage.dest),
            self.output.reg_write.eq(stage.reg_write),
            self.output.wb_sel.eq(stage.wb_sel),
        ]

        return m


class WriteBackStage(wiring.Component):
    """Write Back 阶段：决定写回寄存器堆的数据来源。"""

    input: In(MemoryStageBus())
    output: Out(WriteBackBus())

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        with m.If(self.input.wb_sel == WbSel.MEMORY):
            m.d.comb += self.output.write_data.eq(self.input.load_data)
        with m.Else():
            m.d.comb += self.output.write_data.eq(self.input.result)

        m.d.comb += [
            self.output.sp_data.eq(self.input.sp_next),
            self.output.dest.eq(self.input.dest),
            self.output.reg_write.eq(self.input.reg_write),
        ]

        return m


class CPU(wiring.Component):
    # 控制接口
    reset: In(1)
    interrupt: In(1)

    # I/O 端口
    in_port: In(8)
    out_port: Out(8)  # 复位不清零
    out_strobe: Out(1)  # out_port 刚被 OUT 更新

    # 指令内存接口
    imem_addr: Out(8)
    imem_rdata: In(8)
    reset_vector: In(8)
    interrupt_vector: In(8)

    # 数据内存接口
    dmem_addr: Out(8)
    dmem_rdata: In(8)
    dmem_wdata: Out(8)
    dmem_wen: Out(1)

    def __init__(self):
        super().__init__()

        # ========== 实例化所有子模块 ==========
        self.pc = ProgramCounter()
        self.regfile = RegFile()
        self.ccr = ConditionCodeRegister()
        self.hazard = HazardUnit()

        self.fetch = InstructionFetchStage()
        self.fd_reg = FetchDecodeRegister()
        self.decode = InstructionDecodeStage()
        self.de_reg = DecodeExecuteRegister()
        self.execute = ExecuteStage()
        self.em_reg = ExecuteMemoryRegister()
        self.memory = MemoryStage()
        self.mw_reg = MemoryWriteBackRegister()
        self.writeback = WriteBackStage()

    def elaborate(self, platform):
        m = Module()

        pc = m.submodules.pc = self.pc
        regfile = m.submodules.regfile = self.regfile
        ccr = m.submodules.ccr = self.ccr
        hazard = m.submodules.hazard = self.hazard

        fetch = m.submodules.fetch_stage = self.fetch
        fd_reg = m.submodules.fd_reg = self.fd_reg
        decode = m.submodules.decode_stage = self.decode
        de_reg = m.submodules.de_reg = self.de_reg
        execute = m.submodules.execute_stage = self.execute
        em_reg = m.submodules.em_reg = self.em_reg
        memory = m.submodules.memory_stage = self.memory
        mw_reg = m.submodules.mw_reg = self.mw_reg
        writeback = m.submodules.writeback_stage = self.writeback

        # ========== 使用 connect 连接流水线阶段 ==========
        connect(m, fetch.output, fd_reg.input)
        connect(m, fd_reg.output, decode.input)
        connect(m, decode.output, de_reg.input)
        connect(m, de_reg.output, execute.input)
        connect(m, execute.output, em_reg.input)
        connect(m, em_reg.output, memory.input)
        connect(m, memory.output, mw_reg.input)
        connect(m, mw_reg.output, writeback.input)

        # ========== 复位 ==========
        m.d.comb += [
            pc.reset.eq(self.reset),
            regfile.reset.eq(self.reset),
            ccr.reset.eq(self.reset),
            fd_reg.reset.eq(self.reset),
            decode.reset.eq(self.reset),
            de_reg.reset.eq(self.reset),
            em_reg.reset.eq(self.reset),
            memory.reset.eq(self.reset),
            mw_reg.reset.eq(self.reset),
        ]

        # ========== PC 与指令内存 ==========
        m.d.comb += [
            pc.reset_vector.eq(self.reset_vector),
            pc.interrupt_vector.eq(self.interrupt_vector),
            pc.interrupt.eq(decode.interrupt_taken),
            pc.redirect.eq(execute.redirect),
            pc.target.eq(execute.target),
            pc.stall.eq(hazard.fetch_stall),
            fetch.pc_current.eq(pc.addr_out),
            self.imem_addr.eq(fetch.imem_addr),
            fetch.imem_data_in.eq(self.imem_rdata),
        ]

        # ========== 译码级 ==========
        m.d.comb += [
            decode.ccr_flags.eq(ccr.flags),
            decode.ex_flags.eq(execute.alu_flags),
            decode.ex_flag_write.eq(execute.flag_write),
            decode.fetch_pc.eq(pc.addr_out),
            decode.ex_redirect.eq(execute.redirect),
            decode.ex_target.eq(execute.target),
            decode.interrupt.eq(self.interrupt),
            decode.stall.eq(hazard.decode_stall),
            fd_reg.stall.eq(hazard.decode_stall),
            fd_reg.flush.eq(hazard.decode_flush),
            fd_reg.capture.eq(decode.capture_operand),
            de_reg.flush.eq(hazard.execute_flush),
        ]

        # ========== HazardUnit 连接 ==========
        ex_ctrl = de_reg.output
        dec_ctrl = decode.output
        m.d.comb += [
            hazard.ex_operands.src1.eq(ex_ctrl.src1),
            hazard.ex_operands.src1_valid.eq(ex_ctrl.src1_valid),
            hazard.ex_operands.src2.eq(ex_ctrl.src2),
            hazard.ex_operands.src2_valid.eq(ex_ctrl.src2_valid),
            hazard.ex_dest.eq(ex_ctrl.dest),
            hazard.ex_reg_write.eq(ex_ctrl.reg_write),
            hazard.ex_mem_read.eq(ex_ctrl.mem_read),
            hazard.ex_redirect.eq(execute.redirect),
            hazard.decode_operands.src1.eq(dec_ctrl.src1),
            hazard.decode_operands.src1_valid.eq(dec_ctrl.src1_valid),
            hazard.decode_operands.src2.eq(dec_ctrl.src2),
            hazard.decode_operands.src2_valid.eq(dec_ctrl.src2_valid),
            hazard.flow_hold.eq(decode.flow_hold),
            hazard.flow_flush.eq(decode.flow_flush),
            hazard.interrupt_taken.eq(decode.interrupt_taken),
            hazard.forwarding_source.mem_dest.eq(em_reg.output.dest),
            hazard.forwarding_source.mem_reg_write.eq(em_reg.output.reg_write),
            hazard.forwarding_source.wb_dest.eq(mw_reg.output.dest),
            hazard.forwarding_source.wb_reg_write.eq(mw_reg.output.reg_write),
        ]

        # ========== 执行级：寄存器读口、转发与 CCR ==========
        m.d.comb += [
            regfile.rd_addr0.eq(execute.rd_addr0),
            regfile.rd_addr1.eq(execute.rd_addr1),
            execute.rd_data0.eq(regfile.rd_data0),
            execute.rd_data1.eq(regfile.rd_data1),
            execute.forward_a.eq(hazard.forward_a),
            execute.forward_b.eq(hazard.forward_b),
            execute.forwarding.mem_result.eq(memory.forward_value),
            execute.forwarding.mem_stack.eq(em_reg.output.sp_next),
            execute.forwarding.wb_result.eq(writeback.output.write_data),
            execute.forwarding.wb_stack.eq(writeback.output.sp_data),
            execute.in_port.eq(self.in_port),
            execute.return_addr.eq(memory.output.load_data),
            ccr.alu_flags.eq(execute.alu_flags),
            ccr.write_en.eq(execute.flag_write),
            ccr.save.eq(execute.save_flags),
            ccr.restore.eq(execute.restore_flags),
        ]

        # OUT：执行级末尾更新输出端口
        m.d.sync += self.out_strobe.eq(execute.port_write & ~self.reset)
        with m.If(execute.port_write & ~self.reset):
            m.d.sync += self.out_port.eq(execute.port_data)

        # ========== 数据内存连接 ==========
        m.d.comb += [
            self.dmem_addr.eq(memory.mem_addr_out),
            self.dmem_wdata.eq(memory.mem_write_data_out),
            self.dmem_wen.eq(memory.mem_write_en_out),
            memory.mem_read_data_in.eq(self.dmem_rdata),
        ]

        # ========== 写回级 ==========
        m.d.comb += [
            regfile.wr_mode.eq(writeback.output.reg_write),
            regfile.wr_addr.eq(writeback.output.dest),
            regfile.wr_data.eq(writeback.output.write_data),
            regfile.sp_data.eq(writeback.output.sp_data),
        ]

        return m
