from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

from pipe8.core.isa import (
    INTERRUPT_VECTOR,
    RESET_VECTOR,
    SP_INDEX,
    BranchOp,
    JumpCond,
    MemoryOp,
    Opcode,
    ShiftOp,
    StackOp,
    UnaryOp,
    encode,
)
from pipe8.memory.image import IMAGE_SIZE, format_image

DEFAULT_ORIGIN = 0x10  # 0/1 为向量单元
Operand = Union[int, str]


@dataclass
class ProgramImage:
    data: List[int]
    labels: Dict[str, int] = field(default_factory=dict)

    def address_of(self, label: str) -> int:
        if label not in self.labels:
            raise ValueError(f"Undefined label '{label}'")
        return self.labels[label]

    def to_text(self) -> str:
        return format_image(self.data)


def _check_reg(reg: int) -> int:
    if not 0 <= reg <= SP_INDEX:
        raise ValueError(f"Register index {reg} out of range (R0-R3)")
    return reg


class ProgramBuilder:
    """按地址逐字节生成指令存储器镜像，支持标签与前向引用。"""

    def __init__(self, origin: int = DEFAULT_ORIGIN):
        self.memory: Dict[int, int] = {}
        self.labels: Dict[str, int] = {}
        self.patches: List[Tuple[int, str]] = []
        self.cursor = origin
        self._vectors: Dict[int, Operand] = {}
        self._finalized = False

    def _assert_mutable(self) -> None:
        if self._finalized:
            raise RuntimeError("Program already finalized")

    def org(self, addr: int) -> None:
        self._assert_mutable()
        if not 0 <= addr < IMAGE_SIZE:
            raise ValueError(f"Origin 0x{addr:X} outside instruction memory")
        self.cursor = addr

    def label(self, name: str) -> None:
        self._assert_mutable()
        if name in self.labels:
            raise ValueError(f"Label '{name}' already defined")
        self.labels[name] = self.cursor

    def byte(self, value: Operand) -> None:
        """写入一个数据字节；字符串按标签地址在 build() 时回填。"""
        self._assert_mutable()
        if self.cursor >= IMAGE_SIZE:
            raise ValueError("Program runs past the end of instruction memory")
        if self.cursor in self.memory:
            raise ValueError(f"Address 0x{self.cursor:02X} written twice")
        if isinstance(value, str):
            self.memory[self.cursor] = 0
            self.patches.append((self.cursor, value))
        else:
            if not 0 <= value <= 0xFF:
                raise ValueError(f"Value {value} does not fit in a byte")
            self.memory[self.cursor] = value
        self.cursor += 1

    def _emit(self, opcode: Opcode, ra: int = 0, rb: int = 0) -> None:
        self.byte(encode(opcode, _check_reg(ra), _check_reg(rb)))

    def vectors(self, *, reset: Optional[Operand] = None, interrupt: Optional[Operand] = None) -> None:
        self._assert_mutable()
        if reset is not None:
            self._vectors[RESET_VECTOR] = reset
        if interrupt is not None:
            self._vectors[INTERRUPT_VECTOR] = interrupt

    # ========== 单字指令 ==========
    def nop(self) -> None:
        self._emit(Opcode.NOP)

    def mov(self, ra: int, rb: int) -> None:
        self._emit(Opcode.MOV, ra, rb)

    def add(self, ra: int, rb: int) -> None:
        self._emit(Opcode.ADD, ra, rb)

    def sub(self, ra: int, rb: int) -> None:
        self._emit(Opcode.SUB, ra, rb)

    def and_(self, ra: int, rb: int) -> None:
        self._emit(Opcode.AND, ra, rb)

    def or_(self, ra: int, rb: int) -> None:
        self._emit(Opcode.OR, ra, rb)

    def rlc(self, rb: int) -> None:
        self._emit(Opcode.SHIFT, ShiftOp.RLC, rb)

    def rrc(self, rb: int) -> None:
        self._emit(Opcode.SHIFT, ShiftOp.RRC, rb)

    def setc(self, rb: int = 0) -> None:
        self._emit(Opcode.SHIFT, ShiftOp.SETC, rb)

    def clrc(self, rb: int = 0) -> None:
        self._emit(Opcode.SHIFT, ShiftOp.CLRC, rb)

    def push(self, rb: int) -> None:
        self._emit(Opcode.STACK, StackOp.PUSH, rb)

    def pop(self, rb: int) -> None:
        self._emit(Opcode.STACK, StackOp.POP, rb)

    def out(self, rb: int) -> None:
        self._emit(Opcode.STACK, StackOp.OUT, rb)

    def in_(self, rb: int) -> None:
        self._emit(Opcode.STACK, StackOp.IN, rb)

    def not_(self, rb: int) -> None:
        self._emit(Opcode.UNARY, UnaryOp.NOT, rb)

    def neg(self, rb: int) -> None:
        self._emit(Opcode.UNARY, UnaryOp.NEG, rb)

    def inc(self, rb: int) -> None:
        self._emit(Opcode.UNARY, UnaryOp.INC, rb)

    def dec(self, rb: int) -> None:
        self._emit(Opcode.UNARY, UnaryOp.DEC, rb)

    def jz(self, rb: int) -> None:
        self._emit(Opcode.JCOND, JumpCond.JZ, rb)

    def jn(self, rb: int) -> None:
        self._emit(Opcode.JCOND, JumpCond.JN, rb)

    def jc(self, rb: int) -> None:
        self._emit(Opcode.JCOND, JumpCond.JC, rb)

    def jv(self, rb: int) -> None:
        self._emit(Opcode.JCOND, JumpCond.JV, rb)

    def loop(self, ra: int, rb: int) -> None:
        self._emit(Opcode.LOOP, ra, rb)

    def jmp(self, rb: int) -> None:
        self._emit(Opcode.BRANCH, BranchOp.JMP, rb)

    def call(self, rb: int) -> None:
        self._emit(Opcode.BRANCH, BranchOp.CALL, rb)

    def ret(self) -> None:
        self._emit(Opcode.BRANCH, BranchOp.RET)

    def rti(self) -> None:
        self._emit(Opcode.BRANCH, BranchOp.RTI)

    def ldi(self, ra: int, rb: int) -> None:
        self._emit(Opcode.LDI, ra, rb)

    def sti(self, ra: int, rb: int) -> None:
        self._emit(Opcode.STI, ra, rb)

    # ========== 双字指令 ==========
    def ldm(self, rb: int, value: Operand) -> None:
        self._emit(Opcode.MEMORY, MemoryOp.LDM, rb)
        self.byte(value)

    def ldd(self, rb: int, addr: Operand) -> None:
        self._emit(Opcode.MEMORY, MemoryOp.LDD, rb)
        self.byte(addr)

    def std(self, rb: int, addr: Operand) -> None:
        self._emit(Opcode.MEMORY, MemoryOp.STD, rb)
        self.byte(addr)

    def _resolve(self, value: Operand) -> int:
        if isinstance(value, str):
            if value not in self.labels:
                raise ValueError(f"Undefined label '{value}'")
            return self.labels[value]
        return value & 0xFF

    def finalize(self) -> None:
        if self._finalized:
            return
        for addr, label in self.patches:
            self.memory[addr] = self._resolve(label)
        for addr, value in self._vectors.items():
            if addr in self.memory:
                raise ValueError(f"Vector cell 0x{addr:02X} overlaps program code")
            self.memory[addr] = self._resolve(value)
        self._finalized = True

    def build(self) -> ProgramImage:
        self.finalize()
        data = [0] * IMAGE_SIZE
        for addr, value in self.memory.items():
            data[addr] = value
        return ProgramImage(data=data, labels=dict(self.labels))

    def address_of(self, label: str) -> int:
        if label not in self.labels:
            raise ValueError(f"Undefined label '{label}'")
        return self.labels[label]


# ========== 文本汇编 ==========
_REGISTER_RE = re.compile(r"^(?:R([0-3])|SP)$", re.IGNORECASE)

# 助记符 -> (builder方法名, 操作数类型)；"r" 寄存器, "v" 立即数/标签
_MNEMONICS: Dict[str, Tuple[str, str]] = {
    "NOP": ("nop", ""),
    "MOV": ("mov", "rr"),
    "ADD": ("add", "rr"),
    "SUB": ("sub", "rr"),
    "AND": ("and_", "rr"),
    "OR": ("or_", "rr"),
    "RLC": ("rlc", "r"),
    "RRC": ("rrc", "r"),
    "SETC": ("setc", ""),
    "CLRC": ("clrc", ""),
    "PUSH": ("push", "r"),
    "POP": ("pop", "r"),
    "OUT": ("out", "r"),
    "IN": ("in_", "r"),
    "NOT": ("not_", "r"),
    "NEG": ("neg", "r"),
    "INC": ("inc", "r"),
    "DEC": ("dec", "r"),
    "JZ": ("jz", "r"),
    "JN": ("jn", "r"),
    "JC": ("jc", "r"),
    "JV": ("jv", "r"),
    "LOOP": ("loop", "rr"),
    "JMP": ("jmp", "r"),
    "CALL": ("call", "r"),
    "RET": ("ret", ""),
    "RTI": ("rti", ""),
    "LDM": ("ldm", "rv"),
    "LDD": ("ldd", "rv"),
    "STD": ("std", "rv"),
    "LDI": ("ldi", "rr"),
    "STI": ("sti", "rr"),
}


class AssemblyError(ValueError):
    def __init__(self, message: str, line: int):
        self.line = line
        super().__init__(f"line {line}: {message}")


def _parse_register(token: str) -> int:
    match = _REGISTER_RE.match(token)
    if not match:
        raise ValueError(f"expected register, got '{token}'")
    return int(match.group(1)) if match.group(1) is not None else SP_INDEX


def _parse_value(token: str) -> Operand:
    try:
        return int(token, 0)
    except ValueError:
        if re.match(r"^[A-Za-z_]\w*$", token):
            return token
        raise ValueError(f"expected number or label, got '{token}'") from None


def assemble(text: str) -> ProgramImage:
    """汇编文本程序：``label:``、助记符、``.org``/``.byte``/``.reset``/``.interrupt``，``;`` 注释。"""
    builder = ProgramBuilder()
    directives: Dict[str, Callable[[str], None]] = {
        ".org": lambda arg: builder.org(int(arg, 0)),
        ".byte": lambda arg: builder.byte(_parse_value(arg)),
        ".reset": lambda arg: builder.vectors(reset=_parse_value(arg)),
        ".interrupt": lambda arg: builder.vectors(interrupt=_parse_value(arg)),
    }

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.split(";", 1)[0].strip()
        if not line:
            continue
        try:
            while ":" in line:
                name, line = line.split(":", 1)
                builder.label(name.strip())
                line = line.strip()
            if not line:
                continue

            parts = line.split(None, 1)
            head = parts[0]
            args = [arg.strip() for arg in parts[1].split(",")] if len(parts) > 1 else []

            if head.lower() in directives:
                if len(args) != 1:
                    raise ValueError(f"{head} takes exactly one argument")
                directives[head.lower()](args[0])
                continue

            mnemonic = head.upper()
            if mnemonic not in _MNEMONICS:
                raise ValueError(f"unknown mnemonic '{head}'")
            method, kinds = _MNEMONICS[mnemonic]
            if len(args) != len(kinds):
                raise ValueError(f"{mnemonic} expects {len(kinds)} operand(s), got {len(args)}")
            operands = [
                _parse_register(arg) if kind == "r" else _parse_value(arg)
                for kind, arg in zip(kinds, args)
            ]
            getattr(builder, method)(*operands)
        except (ValueError, RuntimeError) as exc:
            raise AssemblyError(str(exc), lineno) from exc

    try:
        return builder.build()
    except ValueError as exc:
        raise AssemblyError(str(exc), len(text.splitlines())) from exc


__all__ = ["AssemblyError", "ProgramBuilder", "ProgramImage", "assemble"]
