from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out
from amaranth.lib.memory import Memory

from pipe8.core.isa import INTERRUPT_VECTOR, RESET_VECTOR
from .image import IMAGE_SIZE, normalize_image


class InstructionMemory(wiring.Component):
    """只读指令存储器：组合读取，复位/中断向量单元始终可见"""

    addr: In(8)
    data: Out(8)
    reset_vector: Out(8)
    interrupt_vector: Out(8)

    def __init__(self, image=()):
        self.image = normalize_image(image, size=IMAGE_SIZE)
        super().__init__()

    def elaborate(self, platform):
        m = Module()
        m.submodules.mem = mem = Memory(shape=unsigned(8), depth=IMAGE_SIZE, init=self.image)

        fetch_port = mem.read_port(domain="comb")
        reset_port = mem.read_port(domain="comb")
        interrupt_port = mem.read_port(domain="comb")

        m.d.comb += [
            fetch_port.addr.eq(self.addr),
            self.data.eq(fetch_port.data),
            reset_port.addr.eq(RESET_VECTOR),
            self.reset_vector.eq(reset_port.data),
            interrupt_port.addr.eq(INTERRUPT_VECTOR),
            self.interrupt_vector.eq(interrupt_port.data),
        ]

        return m


class DataMemory(wiring.Component):
    """数据存储器：组合读、同步写（同一周期内读到旧值）"""

    addr: In(8)
    read_data: Out(8)
    write_data: In(8)
    write_enable: In(1)

    # 测试/调试用的旁路读口
    peek_addr: In(8)
    peek_data: Out(8)

    def __init__(self, image=()):
        self.image = normalize_image(image, size=IMAGE_SIZE)
        super().__init__()

    def elaborate(self, platform):
        m = Module()
        m.submodules.mem = mem = Memory(shape=unsigned(8), depth=IMAGE_SIZE, init=self.image)

        wr_port = mem.write_port(domain="sync")
        rd_port = mem.read_port(domain="comb")
        peek_port = mem.read_port(domain="comb")

        m.d.comb += [
            wr_port.addr.eq(self.addr),
            wr_port.data.eq(self.write_data),
            wr_port.en.eq(self.write_enable),
            rd_port.addr.eq(self.addr),
            self.read_data.eq(rd_port.data),
            peek_port.addr.eq(self.peek_addr),
            self.peek_data.eq(peek_port.data),
        ]

        return m
