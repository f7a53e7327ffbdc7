#!/usr/bin/env python3
"""x86-sim Command Line Interface.

Run x86-64 assembly snippets through the simulator.

Usage:
    python main.py --program examples.asm
    python main.py --inline "mov rax, 10; add rax, 5" --trace
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from x86_sim import DEFAULT_MEMORY_SIZE, Simulator
from x86_sim.encoder import format_bytes


def parse_dump(value: str) -> tuple:
    """Parse ADDRESS[:SIZE] (numbers in decimal or 0x hex)."""
    address, _, size = value.partition(":")
    try:
        return int(address, 0), int(size, 0) if size else 64
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid dump range: {value}")


def main():
    parser = argparse.ArgumentParser(
        description="x86-sim: Interactive x86-64 Instruction-Set Simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run a program file
    python main.py --program snippet.asm

    # Run inline assembly with full trace output
    python main.py --inline "mov rax, 10; add rax, 5" --trace

    # Push a value and dump the top of the stack
    python main.py --inline "push 0x1234" --memory-size 0x1000 --dump 0xff0:16
        """
    )

    parser.add_argument(
        "--program", "-p",
        type=str,
        help="Path to assembly file (one instruction per line)"
    )
    parser.add_argument(
        "--inline", "-i",
        type=str,
        help="Inline assembly (separate instructions with ;)"
    )
    parser.add_argument(
        "--memory-size",
        type=lambda v: int(v, 0),
        default=DEFAULT_MEMORY_SIZE,
        help=f"Memory capacity in bytes. Default: {DEFAULT_MEMORY_SIZE:#x}"
    )
    parser.add_argument(
        "--dump",
        type=parse_dump,
        metavar="ADDRESS[:SIZE]",
        help="Dump memory after the run"
    )
    parser.add_argument(
        "--trace", "-t",
        action="store_true",
        help="Print full execution trace"
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Minimal output (non-zero registers only)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args()

    if not args.program and not args.inline:
        parser.error("Either --program or --inline is required")

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    try:
        sim = Simulator(memory_size=args.memory_size)
    except ValueError as e:
        parser.error(str(e))

    if args.program:
        program_path = Path(args.program)
        if not program_path.exists():
            print(f"Error: Program file not found: {args.program}")
            return 1
        source = program_path.read_text()
        if not args.quiet:
            print(f"Loading program: {args.program}")
    else:
        # Inline semicolons separate instructions, so comments are not available
        source = args.inline.replace(";", "\n")
        if not args.quiet:
            print("Running inline assembly")

    if not args.quiet:
        print("-" * 60)

    report = sim.run(source)

    if not args.quiet and not args.trace:
        for entry in report.entries:
            encoded = format_bytes(entry.encoding) if entry.encoding is not None else "??"
            print(f"{str(entry.instruction):<32} {encoded}")

    if report.error is not None:
        print(f"Error at instruction {report.failed_index}: {report.error}")
        if report.not_attempted:
            print(f"{report.not_attempted} instruction(s) not executed")

    # Output
    if args.trace:
        sim.print_trace()
    elif not args.quiet:
        print()
        print(sim.format_state())
    else:
        regs = sim.state.dump_registers()
        for reg, value in regs.items():
            if value != 0:
                print(f"{reg}={value:#x}")

    if args.dump:
        address, size = args.dump
        print()
        print(sim.dump_memory(address, size))

    return 0 if report.completed else 1


if __name__ == "__main__":
    sys.exit(main())
