from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out

from .isa import REG_COUNT, REG_RESET_PATTERN, SP_INDEX, Flags, RegWrite


class RegFile(wiring.Component):
    """4项寄存器文件（双读口，目标/栈指针双写口）

    读口是组合逻辑且不做写优先旁路：同一周期内读到的是旧值，
    写回阶段的新值由前递网络负责提供。
    """

    # 读端口0
    rd_addr0: In(2)
    rd_data0: Out(8)

    # 读端口1
    rd_addr1: In(2)
    rd_data1: Out(8)

    # 写端口
    wr_mode: In(RegWrite)
    wr_addr: In(2)
    wr_data: In(8)  # 写入目标寄存器
    sp_data: In(8)  # 写入R3（栈指针）

    reset: In(1)

    def __init__(self, init=REG_RESET_PATTERN):
        if len(init) != REG_COUNT:
            raise ValueError(f"Register file needs {REG_COUNT} reset values, got {len(init)}")
        self.init = tuple(value & 0xFF for value in init)
        self.regs = Array(
            Signal(8, name=f"r{i}", init=value) for i, value in enumerate(self.init)
        )
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        m.d.comb += [
            self.rd_data0.eq(self.regs[self.rd_addr0]),
            self.rd_data1.eq(self.regs[self.rd_addr1]),
        ]

        writes_sp = (self.wr_mode == RegWrite.SP) | (self.wr_mode == RegWrite.BOTH)
        writes_dest = (self.wr_mode == RegWrite.DEST) | (self.wr_mode == RegWrite.BOTH)

        with m.If(self.reset):
            for reg, value in zip(self.regs, self.init):
                m.d.sync += reg.eq(value)
        with m.Else():
            with m.If(writes_sp):
                m.d.sync += self.regs[SP_INDEX].eq(self.sp_data)
            # 后写的赋值优先：BOTH 且目标为R3时，目标寄存器的值生效
            with m.If(writes_dest):
                m.d.sync += self.regs[self.wr_addr].eq(self.wr_data)

        return m


class ConditionCodeRegister(wiring.Component):
    """条件码寄存器 {Z,N,C,V} 及中断用的影子副本（不支持嵌套）"""

    alu_flags: In(Flags)
    write_en: In(1)
    save: In(1)  # 中断入口：shadow <- flags
    restore: In(1)  # RTI：flags <- shadow
    reset: In(1)

    flags: Out(Flags)
    shadow: Out(Flags)

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        # 每拍只有一个分支生效
        with m.If(self.reset):
            m.d.sync += [
                Value.cast(self.flags).eq(0),
                Value.cast(self.shadow).eq(0),
            ]
        with m.Elif(self.restore):
            m.d.sync += self.flags.eq(self.shadow)
        with m.Elif(self.save):
            m.d.sync += self.shadow.eq(self.flags)
        with m.Elif(self.write_en):
            m.d.sync += self.flags.eq(self.alu_flags)

        return m
