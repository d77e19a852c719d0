from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out, Signature

from .isa import (
    AddrSel,
    AluOp,
    DataSel,
    LinkSel,
    PcSel,
    RegWrite,
    SpSel,
    WbSel,
)


def _connect_interface(m, source, target, *, domain="comb"):
    """把 source 的每个字段赋给 target 中同名的字段。"""
    drive = getattr(m.d, domain)
    for name, member in source.signature.members.items():
        src_field = getattr(source, name)
        dst_field = getattr(target, name)
        if member.is_signature:
            _connect_interface(m, src_field, dst_field, domain=domain)
        else:
            drive += dst_field.eq(src_field)


def _clear_interface(m, target, *, domain="sync"):
    """把接口的所有字段清零（即NOP/无效模式）。"""
    drive = getattr(m.d, domain)
    for name, member in target.signature.members.items():
        field = getattr(target, name)
        if member.is_signature:
            _clear_interface(m, field, domain=domain)
        else:
            drive += Value.cast(field).eq(0)


# ========== 流水线接口定义 ==========


class FetchStageBus(Signature):
    """IF→ID总线：取出的指令字、双字指令捕获的立即数及对应PC。"""

    def __init__(self):
        super().__init__(
            {
                "instruction": Out(8),  # 指令字（气泡/捕获周期为0）
                "immediate": Out(8),  # 双字指令的第二个字
                "pc": Out(8),  # 该字节所在地址
                "valid": Out(1),  # 0表示气泡
            }
        )


class ControlBus(Signature):
    """控制时序器的输出：源/目的寄存器、各级控制信号和多路选择。"""

    def __init__(self):
        super().__init__(self.fields())

    @staticmethod
    def fields():
        return {
            # 操作数A/B的源寄存器及有效位（决定转发与load-use检测）
            "src1": Out(2),
            "src1_valid": Out(1),
            "src2": Out(2),
            "src2_valid": Out(1),
            # 写回
            "dest": Out(2),
            "reg_write": Out(RegWrite),
            # 执行
            "alu_op": Out(AluOp),
            "flag_write": Out(1),
            "loop": Out(1),  # LOOP：仅当结果非零时跳转
            "port_write": Out(1),  # OUT
            "save_flags": Out(1),  # 中断入口保存CCR
            "restore_flags": Out(1),  # RTI恢复CCR
            # 访存
            "mem_read": Out(1),
            "mem_write": Out(1),
            # 多路选择
            "pc_sel": Out(PcSel),
            "sp_sel": Out(SpSel),
            "addr_sel": Out(AddrSel),
            "data_sel": Out(DataSel),
            "wb_sel": Out(WbSel),
            "link_sel": Out(LinkSel),
        }


class DecodeStageBus(Signature):
    """ID→EX总线：控制信号加上PC与立即数。"""

    def __init__(self):
        members = ControlBus.fields()
        members.update(
            {
                "pc": Out(8),  # 指令PC（中断微操作时为返回地址）
                "immediate": Out(8),
            }
        )
        super().__init__(members)


class ExecuteStageBus(Signature):
    """EX→MEM总线：运算结果、转发后的操作数及访存/写回控制。"""

    def __init__(self):
        super().__init__(
            {
                "result": Out(8),  # 按wb_sel选好的执行结果
                "operand_a": Out(8),
                "operand_b": Out(8),
                "sp_next": Out(8),  # 新的栈指针
                "immediate": Out(8),
                "pc": Out(8),
                "dest": Out(2),
                "reg_write": Out(RegWrite),
                "mem_read": Out(1),
                "mem_write": Out(1),
                "addr_sel": Out(AddrSel),
                "data_sel": Out(DataSel),
                "link_sel": Out(LinkSel),
                "wb_sel": Out(WbSel),
            }
        )


class MemoryStageBus(Signature):
    """MEM→WB总线：执行结果、读出数据与写回控制。"""

    def __init__(self):
        super().__init__(
            {
                "result": Out(8),
                "load_data": Out(8),
                "sp_next": Out(8),
                "dest": Out(2),
                "reg_write": Out(RegWrite),
                "wb_sel": Out(WbSel),
            }
        )


class WriteBackBus(Signature):
    """写回阶段输出：驱动寄存器文件写口。"""

    def __init__(self):
        super().__init__(
            {
                "write_data": Out(8),
                "sp_data": Out(8),
                "dest": Out(2),
                "reg_write": Out(RegWrite),
            }
        )


# ========== 流水寄存器 ==========


class FetchDecodeRegister(wiring.Component):
    """IF/ID 流水寄存器：stall 时保持，flush 时清为气泡。

    capture 周期把取到的字节存入 immediate，并向译码级呈现 NOP 操作码。
    """

    input: In(FetchStageBus())
    stall: In(1)
    flush: In(1)
    capture: In(1)
    reset: In(1)
    output: Out(FetchStageBus())

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        with m.If(self.reset | self.flush):
            _clear_interface(m, self.output)
        with m.Elif(~self.stall):
            with m.If(self.capture):
                m.d.sync += [
                    self.output.instruction.eq(0),
                    self.output.immediate.eq(self.input.instruction),
                    self.output.pc.eq(self.input.pc),
                    self.output.valid.eq(1),
                ]
            with m.Else():
                _connect_interface(m, self.input, self.output, domain="sync")

        return m


class DecodeExecuteRegister(wiring.Component):
    """ID/EX 流水寄存器：load-use 冒险时插入气泡。"""

    input: In(DecodeStageBus())
    flush: In(1)
    reset: In(1)
    output: Out(DecodeStageBus())

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        with m.If(self.reset | self.flush):
            _clear_interface(m, self.output)
        with m.Else():
            _connect_interface(m, self.input, self.output, domain="sync")

        return m


class ExecuteMemoryRegister(wiring.Component):
    """EX/MEM 流水寄存器"""

    input: In(ExecuteStageBus())
    reset: In(1)
    output: Out(ExecuteStageBus())

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        with m.If(self.reset):
            _clear_interface(m, self.output)
        with m.Else():
            _connect_interface(m, self.input, self.output, domain="sync")

        return m


class MemoryWriteBackRegister(wiring.Component):
    """MEM/WB 流水寄存器"""

    input: In(MemoryStageBus())
    reset: In(1)
    output: Out(MemoryStageBus())

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        with m.If(self.reset):
            _clear_interface(m, self.output)
        with m.Else():
            _connect_interface(m, self.input, self.output, domain="sync")

        return m
