from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out, Signature

from .isa import SP_INDEX, ForwardSel, RegWrite


class OperandBus(Signature):
    """一条指令读取的两个源寄存器及其有效位。"""

    def __init__(self):
        super().__init__(
            {
                "src1": Out(2),
                "src1_valid": Out(1),
                "src2": Out(2),
                "src2_valid": Out(1),
            }
        )


class ForwardingSourceBus(Signature):
    """汇聚EX/MEM与MEM/WB阶段的写回信息。"""

    def __init__(self):
        super().__init__(
            {
                # EX/MEM阶段
                "mem_dest": Out(2),
                "mem_reg_write": Out(RegWrite),
                # MEM/WB阶段
                "wb_dest": Out(2),
                "wb_reg_write": Out(RegWrite),
            }
        )


class HazardUnit(wiring.Component):
    """
    冒险检测与转发单元（纯组合逻辑）

    - 转发：每个操作数独立选择，优先级 访存级目标 > 访存级SP > 写回级目标 > 写回级SP > 寄存器文件
    - load-use：执行级的指令从存储器读出数据写入目标寄存器，且译码级指令读取该寄存器
    - 冲刷/暂停：执行级重定向或译码级的控制流请求

    注意：所有输出默认0（无冒险），全零的流水寄存器不会产生任何冒险
    """

    # 执行级（ID/EX输出）
    ex_operands: In(OperandBus())
    ex_dest: In(2)
    ex_reg_write: In(RegWrite)
    ex_mem_read: In(1)
    ex_redirect: In(1)

    # 译码级（控制时序器输出）
    decode_operands: In(OperandBus())
    flow_hold: In(1)
    flow_flush: In(1)
    interrupt_taken: In(1)

    forwarding_source: In(ForwardingSourceBus())

    forward_a: Out(ForwardSel)
    forward_b: Out(ForwardSel)
    load_use: Out(1)
    fetch_stall: Out(1)  # 保持PC
    decode_stall: Out(1)  # 保持IF/ID与时序器状态
    decode_flush: Out(1)  # 清空IF/ID
    execute_flush: Out(1)  # 向ID/EX插入气泡

    def __init__(self):
        super().__init__()

    def elaborate(self, platform):
        m = Module()

        fwd_src = self.forwarding_source

        def writes_dest(mode):
            return (mode == RegWrite.DEST) | (mode == RegWrite.BOTH)

        def writes_sp(mode):
            return (mode == RegWrite.SP) | (mode == RegWrite.BOTH)

        def select(target, src, valid):
            with m.If(valid & writes_dest(fwd_src.mem_reg_write) & (fwd_src.mem_dest == src)):
                m.d.comb += target.eq(ForwardSel.MEM_RESULT)
            with m.Elif(valid & writes_sp(fwd_src.mem_reg_write) & (src == SP_INDEX)):
                m.d.comb += target.eq(ForwardSel.MEM_STACK)
            with m.Elif(valid & writes_dest(fwd_src.wb_reg_write) & (fwd_src.wb_dest == src)):
                m.d.comb += target.eq(ForwardSel.WB_RESULT)
            with m.Elif(valid & writes_sp(fwd_src.wb_reg_write) & (src == SP_INDEX)):
                m.d.comb += target.eq(ForwardSel.WB_STACK)
            with m.Else():
                m.d.comb += target.eq(ForwardSel.REGISTER)

        ex_ops = self.ex_operands
        select(self.forward_a, ex_ops.src1, ex_ops.src1_valid)
        select(self.forward_b, ex_ops.src2, ex_ops.src2_valid)

        # Load-use冒险：读出的数据在访存级之后才有，转发来不及
        dec_ops = self.decode_operands
        reads_ex_dest = (dec_ops.src1_valid & (dec_ops.src1 == self.ex_dest)) | (
            dec_ops.src2_valid & (dec_ops.src2 == self.ex_dest)
        )
        m.d.comb += self.load_use.eq(
            self.ex_mem_read
            & writes_dest(self.ex_reg_write)
            & reads_ex_dest
            & ~self.interrupt_taken  # 中断入口覆盖了译码级的指令
        )

        m.d.comb += [
            self.decode_stall.eq(self.load_use),
            self.execute_flush.eq(self.load_use),
            self.fetch_stall.eq(self.load_use | self.flow_hold),
            # 被暂停的指令不能冲刷自己
            self.decode_flush.eq((self.flow_flush & ~self.load_use) | self.ex_redirect),
        ]

        return m
