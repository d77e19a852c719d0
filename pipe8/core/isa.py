from enum import IntEnum

from amaranth import *
from amaranth.lib import data, enum


# ========== 指令格式 ==========
# 8位指令字: opcode[7:4] | ra[3:2] | rb[1:0]
WORD_BITS = 8
REG_COUNT = 4
SP_INDEX = 3  # R3 同时作为栈指针

# 复位后的寄存器值（栈从数据存储器顶部开始）
REG_RESET_PATTERN = (0x00, 0x00, 0x00, 0xFF)

# 指令存储器中的固定单元
RESET_VECTOR = 0x00
INTERRUPT_VECTOR = 0x01


class Opcode(IntEnum):
    """4位操作码定义"""

    NOP = 0b0000
    MOV = 0b0001
    ADD = 0b0010
    SUB = 0b0011
    AND = 0b0100
    OR = 0b0101
    SHIFT = 0b0110  # RLC/RRC/SETC/CLRC，由ra区分
    STACK = 0b0111  # PUSH/POP/OUT/IN，由ra区分
    UNARY = 0b1000  # NOT/NEG/INC/DEC，由ra区分
    JCOND = 0b1001  # JZ/JN/JC/JV，由ra区分
    LOOP = 0b1010
    BRANCH = 0b1011  # JMP/CALL/RET/RTI，由ra区分
    MEMORY = 0b1100  # LDM/LDD/STD（双字指令），由ra区分
    LDI = 0b1101
    STI = 0b1110
    RESERVED = 0b1111


# ========== ra 子功能码 ==========
class ShiftOp(IntEnum):
    RLC = 0
    RRC = 1
    SETC = 2
    CLRC = 3


class StackOp(IntEnum):
    PUSH = 0
    POP = 1
    OUT = 2
    IN = 3


class UnaryOp(IntEnum):
    NOT = 0
    NEG = 1
    INC = 2
    DEC = 3


class JumpCond(IntEnum):
    JZ = 0
    JN = 1
    JC = 2
    JV = 3


class BranchOp(IntEnum):
    JMP = 0
    CALL = 1
    RET = 2
    RTI = 3


class MemoryOp(IntEnum):
    LDM = 0
    LDD = 1
    STD = 2
    # ra=3 保留，按NOP处理


def encode(opcode, ra=0, rb=0):
    """按 opcode|ra|rb 拼出一个指令字节"""
    return ((int(opcode) & 0xF) << 4) | ((int(ra) & 0x3) << 2) | (int(rb) & 0x3)


# ========== 硬件内部使用的类型化选择信号 ==========
# 每个枚举的0值都是"无动作"，因此全零的流水寄存器就是一条NOP。


class AluOp(enum.Enum, shape=4):
    MOV = 0
    ADD = 1
    SUB = 2
    AND = 3
    OR = 4
    RLC = 5
    RRC = 6
    SETC = 7
    CLRC = 8
    NOT = 9
    NEG = 10
    INC = 11
    DEC = 12


class RegWrite(enum.Enum, shape=2):
    """寄存器写回模式：目标寄存器、栈指针、或二者同时"""

    NONE = 0
    DEST = 1
    SP = 2
    BOTH = 3


class PcSel(enum.Enum, shape=2):
    NEXT = 0
    BRANCH = 1  # 跳转到操作数A（LOOP时还要求结果非零）
    RETURN = 2  # 跳转到访存阶段从栈中读出的地址


class SpSel(enum.Enum, shape=2):
    HOLD = 0
    INC = 1
    DEC = 2


class AddrSel(enum.Enum, shape=2):
    OPERAND_A = 0
    STACK = 1  # 操作数B（当前SP）
    STACK_NEXT = 2  # SP+1
    IMMEDIATE = 3


class DataSel(enum.Enum, shape=1):
    OPERAND_A = 0
    OPERAND_B = 1


class LinkSel(enum.Enum, shape=2):
    """写存数据是否改用PC（CALL压PC+1，中断压当前PC）"""

    OPERAND = 0
    PC_NEXT = 1
    PC = 2


class WbSel(enum.Enum, shape=2):
    RESULT = 0
    MEMORY = 1
    IMMEDIATE = 2
    INPUT = 3


class ForwardSel(enum.Enum, shape=3):
    REGISTER = 0
    MEM_RESULT = 1
    MEM_STACK = 2
    WB_RESULT = 3
    WB_STACK = 4


class SequencerState(enum.Enum, shape=3):
    """控制时序器的微状态：双字指令/RET的第二个周期"""

    IDLE = 0
    LDM = 1
    LDD = 2
    STD = 3
    RET = 4  # RTI 与 RET 共用


class Flags(data.Struct):
    zero: unsigned(1)
    negative: unsigned(1)
    carry: unsigned(1)
    overflow: unsigned(1)
