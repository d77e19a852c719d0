from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out

from pipe8.core.cpu import CPU
from pipe8.memory.memory_file import DataMemory, InstructionMemory


class Processor(wiring.Component):
    """CPU + 指令存储器 + 数据存储器，供仿真和综合使用的顶层。"""

    reset: In(1)
    interrupt: In(1)
    in_port: In(8)
    out_port: Out(8)
    out_strobe: Out(1)

    # 数据存储器旁路读口（测试/调试用）
    dmem_peek_addr: In(8)
    dmem_peek_data: Out(8)

    debug_pc: Out(8)
    debug_instr: Out(8)

    def __init__(self, program=(), data=()):
        super().__init__()
        self.cpu = CPU()
        self.imem = InstructionMemory(program)
        self.dmem = DataMemory(data)

    def elaborate(self, platform):
        m = Module()
        cpu = m.submodules.cpu = self.cpu
        imem = m.submodules.imem = self.imem
        dmem = m.submodules.dmem = self.dmem

        m.d.comb += [
            cpu.reset.eq(self.reset),
            cpu.interrupt.eq(self.interrupt),
            cpu.in_port.eq(self.in_port),
            self.out_port.eq(cpu.out_port),
            self.out_strobe.eq(cpu.out_strobe),
            # 指令存储器
            imem.addr.eq(cpu.imem_addr),
            cpu.imem_rdata.eq(imem.data),
            cpu.reset_vector.eq(imem.reset_vector),
            cpu.interrupt_vector.eq(imem.interrupt_vector),
            # 数据存储器
            dmem.addr.eq(cpu.dmem_addr),
            dmem.write_data.eq(cpu.dmem_wdata),
            dmem.write_enable.eq(cpu.dmem_wen),
            cpu.dmem_rdata.eq(dmem.read_data),
            dmem.peek_addr.eq(self.dmem_peek_addr),
            self.dmem_peek_data.eq(dmem.peek_data),
            self.debug_pc.eq(cpu.imem_addr),
            self.debug_instr.eq(imem.data),
        ]

        return m
