"""
将 pipe8 处理器转换为 Verilog 文件

生成两个文件：只含流水线的 CPU（存储器接口引出），以及带指令/数据存储器的 Processor 顶层。
"""

from pathlib import Path
import sys
import re
import argparse

# 添加项目根目录到 Python 路径
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from amaranth.back import verilog
from pipe8.core.cpu import CPU
from pipe8.memory.image import ImageFormatError, load_image
from pipe8.processor import Processor
from program.demo import build_demo_program


def process_verilog_paths(verilog_text: str, strip_paths: bool = False) -> str:
    """
    处理 Verilog 代码中的 src 路径注释

    Args:
        verilog_text: 原始 Verilog 代码
        strip_paths: 为 True 时删除所有路径注释，否则改写为相对项目根目录的路径
    """
    if strip_paths:
        return re.sub(r'\(\* src = "[^"]*" \*\)\n', '', verilog_text)

    def replace_path(match):
        # src 形如 "D:\Code\pipe8\pipe8\core\cpu.py:123"
        full_path, _, line = match.group(1).rpartition(":")
        if not full_path:
            return match.group(0)
        try:
            rel_path = Path(full_path).relative_to(PROJECT_ROOT)
        except ValueError:
            return match.group(0)
        return f'(* src = "{rel_path.as_posix()}:{line}" *)'

    return re.sub(r'\(\* src = "([^"]*)" \*\)', replace_path, verilog_text)


def write_verilog(text: str, output_file: Path, strip_paths: bool) -> Path:
    output_file.parent.mkdir(parents=True, exist_ok=True)
    with open(output_file, "w", encoding="utf-8") as f:
        f.write(process_verilog_paths(text, strip_paths))
    return output_file


def generate_cpu_verilog(output_dir="build/verilog", strip_paths=False):
    """生成 CPU 的 Verilog 代码（存储器由外部提供）"""
    print("生成 CPU Verilog 代码...")
    cpu = CPU()
    text = verilog.convert(cpu, name="pipe8_cpu")
    output_file = write_verilog(text, Path(output_dir) / "pipe8_cpu.v", strip_paths)
    print(f"✓ CPU Verilog 已生成: {output_file}")
    return output_file


def generate_processor_verilog(output_dir="build/verilog", strip_paths=False, program=None, data=None):
    """生成带存储器的顶层，程序与数据镜像作为存储器初值写入"""
    if program is None:
        artifact = build_demo_program()
        program = artifact.image.data
        data = artifact.data if data is None else data
        print("\n生成 Processor Verilog 代码 (使用演示程序)...")
    else:
        print("\n生成 Processor Verilog 代码...")

    processor = Processor(program=program, data=data or ())
    text = verilog.convert(processor, name="pipe8_processor")
    output_file = write_verilog(text, Path(output_dir) / "pipe8_processor.v", strip_paths)
    print(f"✓ Processor Verilog 已生成: {output_file}")
    return output_file


def main():
    parser = argparse.ArgumentParser(
        description="将 pipe8 处理器转换为 Verilog 文件",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 默认：使用相对路径，存储器初值为演示程序
  python generate_verilog.py

  # 完全移除路径注释
  python generate_verilog.py --strip-paths

  # 使用自己的程序镜像
  python generate_verilog.py --program prog.hex --data data.hex
        """
    )

    parser.add_argument(
        "--strip-paths",
        action="store_true",
        help="完全移除 Verilog 代码中的源文件路径注释"
    )

    parser.add_argument(
        "-o", "--output",
        default="build/verilog",
        help="输出目录 (默认: build/verilog)"
    )

    parser.add_argument("--program", default=None, help="指令存储器镜像 (hex 文本)")
    parser.add_argument(
        "--top",
        choices=("all", "cpu", "processor"),
        default="all",
        help="只生成指定的顶层 (默认: 两者都生成)",
    )
    parser.add_argument("--data", default=None, help="数据存储器镜像 (hex 文本)")

    args = parser.parse_args()

    print("=" * 60)
    print("Amaranth HDL → Verilog 转换工具")
    print("=" * 60)
    print(f"输出目录: {args.output}\n")

    try:
        program = load_image(args.program) if args.program else None
        data = load_image(args.data) if args.data else None
        generated = []
        if args.top in ("all", "cpu"):
            generated.append(generate_cpu_verilog(args.output, args.strip_paths))
        if args.top in ("all", "processor"):
            generated.append(generate_processor_verilog(args.output, args.strip_paths, program, data))
    except (ImageFormatError, OSError) as e:
        print(f"\n✗ 错误: {e}")
        return 1

    print(f"\n✓ 共生成 {len(generated)} 个 Verilog 文件:")
    for path in generated:
        print(f"  - {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
