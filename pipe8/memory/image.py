"""
程序镜像（hex文本）的解析与生成

格式：每行一个无符号十六进制字节（可带 0x 前缀），按地址依次装入；
``@XX`` 行把装入位置移动到地址 XX；``#`` 和 ``//`` 开始注释，空行忽略。
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Union

IMAGE_SIZE = 256


class ImageFormatError(ValueError):
    """镜像文本格式错误，携带出错的行号"""

    def __init__(self, message: str, *, line: Optional[int] = None, source: str = "<image>"):
        self.line = line
        self.source = source
        location = f"{source}:{line}" if line is not None else source
        super().__init__(f"{location}: {message}")


def normalize_image(values: Iterable[int], *, size: int = IMAGE_SIZE) -> List[int]:
    """检查字节范围并用0填充到完整的存储器深度"""
    image = list(values)
    if len(image) > size:
        raise ValueError(f"Image has {len(image)} bytes, memory holds only {size}")
    for addr, value in enumerate(image):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"Value 0x{value:X} at address 0x{addr:02X} does not fit in a byte")
    return image + [0] * (size - len(image))


def _strip_comment(raw: str) -> str:
    for marker in ("#", "//"):
        idx = raw.find(marker)
        if idx >= 0:
            raw = raw[:idx]
    return raw.strip()


def _parse_hex(token: str) -> int:
    if token.lower().startswith("0x"):
        token = token[2:]
    if not token:
        raise ValueError("empty number")
    return int(token, 16)


def parse_image(text: str, *, source: str = "<image>", size: int = IMAGE_SIZE) -> List[int]:
    image = [0] * size
    addr = 0
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = _strip_comment(raw)
        if not line:
            continue

        if line.startswith("@"):
            try:
                origin = _parse_hex(line[1:].strip())
            except ValueError:
                raise ImageFormatError(f"malformed origin '{line}'", line=lineno, source=source) from None
            if origin >= size:
                raise ImageFormatError(
                    f"origin 0x{origin:X} is outside the {size}-byte memory", line=lineno, source=source
                )
            addr = origin
            continue

        try:
            value = _parse_hex(line)
        except ValueError:
            raise ImageFormatError(f"malformed byte '{line}'", line=lineno, source=source) from None
        if value > 0xFF:
            raise ImageFormatError(f"value 0x{value:X} does not fit in a byte", line=lineno, source=source)
        if addr >= size:
            raise ImageFormatError("image runs past the end of memory", line=lineno, source=source)

        image[addr] = value
        addr += 1

    return image


def load_image(path: Union[str, Path]) -> List[int]:
    path = Path(path)
    return parse_image(path.read_text(encoding="utf-8"), source=str(path))


def format_image(image: Iterable[int]) -> str:
    """生成 parse_image 可读回的文本：连续的零区间用 @ 跳过"""
    data = normalize_image(image)
    lines: List[str] = []
    expected = 0
    for addr, value in enumerate(data):
        if value == 0:
            continue
        if addr != expected:
            lines.append(f"@{addr:02X}")
        lines.append(f"{value:02X}")
        expected = addr + 1
    return "\n".join(lines) + "\n"
