"""x86-sim Interactive Demo.

A Gradio web interface for running and inspecting x86-64 snippets.

Usage:
    cd /path/to/x86-sim
    python demo/gradio_app.py

Features:
    - Write or load assembly snippets
    - See the machine-code bytes of every instruction
    - Step-by-step trace with register and flag changes
    - Final registers, flags and a memory dump
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import gradio as gr
from x86_sim import Simulator
from x86_sim.encoder import format_bytes


# =============================================================================
# Example Programs
# =============================================================================

EXAMPLE_PROGRAMS = {
    "Add": """    mov rax, 10     ; rax = 10
    add rax, 5      ; rax = 15""",

    "Aliasing": """    mov rax, -1     ; rax = 0xffffffffffffffff
    mov eax, 1      ; 32-bit write zero-extends
    mov ah, 0x12    ; ah is bits 8..15 of rax
    mov ax, 0xbeef  ; 16-bit write keeps the upper bits""",

    "Stack": """    mov rax, 0x1122334455667788
    push rax
    push 42
    pop rbx         ; rbx = 42
    pop rcx         ; rcx = rax""",

    "Flags": """    mov al, 0xf0
    and al, 0x0f    ; ZF=1
    mov bl, 0x7f
    add bl, 1       ; OF=1 SF=1
    xor ecx, ecx
    sub ecx, 1      ; CF=1""",

    "Divide": """    mov rax, 100
    xor edx, edx
    mov rbx, 7
    div rbx         ; rax = 14, rdx = 2
    mov rcx, 0
    div rcx         ; divide by zero: run stops here
    mov rsi, 1      ; never executed""",

    "Custom": ""
}


# =============================================================================
# Execution Functions
# =============================================================================

def run_program(program: str, memory_size: int, dump_address: str, dump_size: int) -> tuple:
    """Execute an assembly snippet and return results.

    Args:
        program: Assembly source
        memory_size: Memory capacity in bytes
        dump_address: Start of the memory dump (decimal or 0x hex)
        dump_size: Bytes to dump

    Returns:
        Tuple of (summary_text, trace_text, registers_text, memory_text)
    """
    if not program.strip():
        return "Error: No program provided", "", "", ""

    try:
        address = int(dump_address.strip() or "0", 0)
    except ValueError:
        return f"Error: Invalid dump address {dump_address!r}", "", "", ""

    sim = Simulator(memory_size=int(memory_size))
    report = sim.run(program)

    # Format summary
    summary = sim.get_summary()
    summary_lines = [
        "EXECUTION SUMMARY",
        "=" * 40,
        f"Executed: {summary['executed']} / {report.total}",
        f"Completed: {'Yes' if report.completed else 'No'}",
    ]
    if report.error is not None:
        summary_lines.append(f"\nStopped at instruction {report.failed_index}:")
        summary_lines.append(f"  {report.error}")
        if report.not_attempted:
            summary_lines.append(f"  {report.not_attempted} instruction(s) not attempted")
    summary_text = "\n".join(summary_lines)

    # Format trace
    trace_lines = [
        "EXECUTION TRACE",
        "=" * 60,
    ]
    for entry in report.entries[:100]:
        trace_lines.append(f"\n--- [{entry.index}] {'OK' if entry.ok else 'FAILED'} ---")
        trace_lines.append(f"Instruction: {entry.instruction}")
        if entry.encoding is not None:
            trace_lines.append(f"Bytes:       {format_bytes(entry.encoding)}")
        else:
            trace_lines.append(f"Bytes:       <{entry.encode_error}>")
        if entry.error is not None:
            trace_lines.append(f"Error:       {entry.error}")

        changes = [
            f"{name}: {before:#x} -> {after:#x}"
            for name, (before, after) in entry.register_changes().items()
        ]
        if changes:
            trace_lines.append(f"Changes:     {', '.join(changes)}")
        flags = [
            f"{name}: {int(before)} -> {int(after)}"
            for name, (before, after) in entry.flag_changes().items()
        ]
        if flags:
            trace_lines.append(f"Flags:       {', '.join(flags)}")

    if len(report.entries) > 100:
        trace_lines.append(f"\n... ({len(report.entries) - 100} more entries)")
    trace_text = "\n".join(trace_lines)

    # Format registers
    reg_lines = [
        "FINAL REGISTERS",
        "=" * 30,
    ]
    for reg, value in summary["registers"].items():
        marker = " *" if value != 0 else ""
        reg_lines.append(f"  {reg:>3}: {value:#018x}{marker}")

    reg_lines.append("")
    reg_lines.append("FLAGS")
    reg_lines.append("-" * 30)
    for flag, value in summary["flags"].items():
        reg_lines.append(f"  {flag}: {int(value)}")
    reg_lines.append(f"  rflags: {summary['rflags']:#06x}")
    registers_text = "\n".join(reg_lines)

    memory_text = sim.dump_memory(address, int(dump_size))

    return summary_text, trace_text, registers_text, memory_text


def load_example(example_name: str) -> str:
    """Load an example program."""
    return EXAMPLE_PROGRAMS.get(example_name, "")


# =============================================================================
# Gradio Interface
# =============================================================================

def create_demo():
    """Create and return the Gradio demo interface."""

    with gr.Blocks(title="x86-sim Demo", theme=gr.themes.Soft()) as demo:
        gr.Markdown("""
        # x86-sim: Interactive x86-64 Simulator

        Each line is parsed, encoded to its exact machine-code bytes, and executed
        against a simulated CPU. A failing instruction leaves the state untouched
        and stops the run.

        **Pipeline**: `text -> parse -> instruction -> encode + execute -> state`
        """)

        with gr.Row():
            with gr.Column(scale=2):
                gr.Markdown("### Assembly")

                example_dropdown = gr.Dropdown(
                    choices=list(EXAMPLE_PROGRAMS.keys()),
                    value="Add",
                    label="Load Example"
                )

                program_input = gr.Textbox(
                    value=EXAMPLE_PROGRAMS["Add"],
                    label="Source Code",
                    lines=15,
                    placeholder="Enter Intel-syntax assembly here..."
                )

                gr.Markdown("### Settings")

                with gr.Row():
                    memory_size = gr.Slider(
                        minimum=0x100,
                        maximum=0x100000,
                        value=0x10000,
                        step=0x100,
                        label="Memory Size (bytes)"
                    )
                    dump_size = gr.Slider(
                        minimum=16,
                        maximum=256,
                        value=64,
                        step=16,
                        label="Dump Size"
                    )

                dump_address = gr.Textbox(
                    value="0xffc0",
                    label="Dump Address"
                )

                run_button = gr.Button("Run", variant="primary")

            with gr.Column(scale=3):
                with gr.Row():
                    summary_output = gr.Textbox(
                        label="Summary",
                        lines=10,
                        interactive=False
                    )
                    registers_output = gr.Textbox(
                        label="Final Registers",
                        lines=10,
                        interactive=False
                    )

                trace_output = gr.Textbox(
                    label="Execution Trace",
                    lines=20,
                    interactive=False
                )
                memory_output = gr.Textbox(
                    label="Memory",
                    lines=8,
                    interactive=False
                )

        with gr.Accordion("Instruction Reference", open=False):
            gr.Markdown("""
            | Class | Mnemonics |
            |-------|-----------|
            | Data movement | `mov movzx movsx movsxd lea xchg push pop cmove cmovne cqo cdq nop` |
            | Arithmetic | `add adc sub sbb inc dec neg mul imul div idiv cmp` |
            | Bitwise | `and or xor not test` |
            | Shifts | `shl/sal shr sar rol ror` |
            | Bit scan | `bsf bsr` |
            | Packed integer | `paddd xmm, xmm` |

            **Registers**: `rax..r15` with `eax/ax/al/ah`-style views, `xmm0..xmm15`
            **Memory**: `qword ptr [base + index*scale + disp]`
            **Immediates**: `42`, `-7`, `0x2a`, `0b101010`
            """)

        example_dropdown.change(
            fn=load_example,
            inputs=[example_dropdown],
            outputs=[program_input]
        )

        run_button.click(
            fn=run_program,
            inputs=[program_input, memory_size, dump_address, dump_size],
            outputs=[summary_output, trace_output, registers_output, memory_output]
        )

    return demo


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    demo = create_demo()
    demo.launch(
        share=False,
        server_name="0.0.0.0",
        server_port=7861,
        show_error=True
    )
