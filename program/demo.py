from __future__ import annotations

from dataclasses import dataclass
from typing import List

from pipe8.memory.image import IMAGE_SIZE
from program.assembler import ProgramBuilder, ProgramImage

R0, R1, R2, SP = 0, 1, 2, 3

# 数据存储器布局：mem[0]=元素个数, mem[1..N]=数组, mem[SUM_ADDR]=累加结果
ARRAY = [3, 17, 8, 29, 12]
SUM_ADDR = 0x80


@dataclass
class ProgramArtifact:
    image: ProgramImage
    data: List[int]
    done_pc: int
    expected_output: int


def build_demo_data() -> List[int]:
    data = [0] * IMAGE_SIZE
    data[0] = len(ARRAY)
    data[1 : 1 + len(ARRAY)] = ARRAY
    return data


def build_demo_program() -> ProgramArtifact:
    """数组求和：从后往前累加到 mem[SUM_ADDR]，再通过子程序把结果送到输出端口。

    中断服务程序把输入端口的值回显到输出端口，并保持 R0 与标志位不变。
    """
    b = ProgramBuilder()
    b.vectors(reset="start", interrupt="isr")

    b.label("start")
    b.ldm(R0, 0)
    b.ldi(R0, R1)  # R1 <- 元素个数

    b.label("body")
    b.ldi(R1, R0)  # R0 <- mem[R1]
    b.ldd(R2, SUM_ADDR)
    b.add(R2, R0)
    b.std(R2, SUM_ADDR)
    b.ldm(R2, "body")
    b.loop(R1, R2)

    b.ldd(R0, SUM_ADDR)
    b.ldm(R2, "report")
    b.call(R2)

    b.ldm(R2, "done")
    b.label("done")
    b.jmp(R2)

    b.label("report")
    b.out(R0)
    b.ret()

    b.label("isr")
    b.push(R0)
    b.in_(R0)
    b.out(R0)
    b.pop(R0)
    b.rti()

    image = b.build()
    return ProgramArtifact(
        image=image,
        data=build_demo_data(),
        done_pc=image.address_of("done"),
        expected_output=sum(ARRAY) & 0xFF,
    )


__all__ = ["ProgramArtifact", "build_demo_data", "build_demo_program"]
