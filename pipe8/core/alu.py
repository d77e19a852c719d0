from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out

from .isa import AluOp, Flags


class ALU(wiring.Component):
    a: In(8)
    b: In(8)
    op: In(AluOp)
    result: Out(8)
    flags: Out(Flags)

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        a = self.a
        b = self.b
        result = Signal(8)
        carry = Signal()
        overflow = Signal()

        # 9位中间结果，最高位即进位/借位
        total = Signal(9)

        # C/V 默认为0：AND/OR/MOV/NOT 写标志时总是清零 C 和 V
        with m.Switch(self.op):
            with m.Case(AluOp.MOV):
                m.d.comb += result.eq(b)
            with m.Case(AluOp.ADD):
                m.d.comb += [
                    total.eq(a + b),
                    result.eq(total[:8]),
                    carry.eq(total[8]),
                    overflow.eq(~(a[7] ^ b[7]) & (a[7] ^ total[7])),
                ]
            with m.Case(AluOp.SUB):
                m.d.comb += [
                    total.eq(a - b),
                    result.eq(total[:8]),
                    carry.eq(total[8]),  # 借位
                    overflow.eq((a[7] ^ b[7]) & (a[7] ^ total[7])),
                ]
            with m.Case(AluOp.AND):
                m.d.comb += result.eq(a & b)
            with m.Case(AluOp.OR):
                m.d.comb += result.eq(a | b)
            with m.Case(AluOp.RLC):
                m.d.comb += [
                    result.eq(Cat(b[7], b[:7])),
                    carry.eq(b[7]),
                ]
            with m.Case(AluOp.RRC):
                m.d.comb += [
                    result.eq(Cat(b[1:], b[0])),
                    carry.eq(b[0]),
                ]
            with m.Case(AluOp.SETC):
                m.d.comb += [result.eq(a), carry.eq(1)]
            with m.Case(AluOp.CLRC):
                m.d.comb += [result.eq(a), carry.eq(0)]
            with m.Case(AluOp.NOT):
                m.d.comb += result.eq(~b)
            with m.Case(AluOp.NEG):
                m.d.comb += [
                    result.eq(-b),
                    carry.eq(b != 0),
                    overflow.eq(b == 0x80),
                ]
            with m.Case(AluOp.INC):
                m.d.comb += [
                    total.eq(b + 1),
                    result.eq(total[:8]),
                    carry.eq(total[8]),
                    overflow.eq(b == 0x7F),
                ]
            with m.Case(AluOp.DEC):
                m.d.comb += [
                    total.eq(b - 1),
                    result.eq(total[:8]),
                    carry.eq(total[8]),
                    overflow.eq(b == 0x80),
                ]

        m.d.comb += self.result.eq(result)

        # Z/N 对所有操作统一由结果计算
        m.d.comb += [
            self.flags.zero.eq(result == 0),
            self.flags.negative.eq(result[7]),
            self.flags.carry.eq(carry),
            self.flags.overflow.eq(overflow),
        ]

        return m
