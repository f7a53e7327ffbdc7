"""Tests for CPUState dataclass."""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from x86_sim.errors import ExecError, ExecErrorKind
from x86_sim.state import (
    CPUState,
    DEFAULT_MEMORY_SIZE,
    GPR_NAMES,
    MASK64,
    XMM_NAMES,
    create_initial_state,
    lookup_register,
    xmm_lanes,
)

DWORD_NAMES = dict(zip(
    GPR_NAMES,
    ("eax", "ecx", "edx", "ebx", "esp", "ebp", "esi", "edi")
    + tuple(f"r{i}d" for i in range(8, 16))
))


class TestCPUStateCreation:
    """Test CPUState initialization and defaults."""

    def test_default_state(self):
        """Default state has zeroed registers, flags and memory; rsp at the top."""
        state = CPUState()
        assert state.rip == 0
        assert state.memory_size == DEFAULT_MEMORY_SIZE
        for name in GPR_NAMES:
            expected = DEFAULT_MEMORY_SIZE if name == "rsp" else 0
            assert state.get_register(name) == expected
        assert not any(state.flags.values())
        assert state.read_memory(0, 16) == bytes(16)

    def test_create_initial_state(self):
        state = create_initial_state(0x1000)
        assert state.memory_size == 0x1000
        assert len(state.memory) == 0x1000
        assert state.get_register("rsp") == 0x1000

    def test_zero_memory_rejected(self):
        with pytest.raises(ValueError):
            CPUState(memory_size=0)


class TestRegisterAliasing:
    """Test 64/32/16/8-bit register views."""

    @pytest.fixture
    def state(self):
        return CPUState(memory_size=0x1000)

    def test_32bit_write_zero_extends(self, state):
        state.set_register("rax", 0xFFFFFFFFFFFFFFFF)
        state.set_register("eax", 1)
        assert state.get_register("rax") == 1

    @pytest.mark.parametrize("name", GPR_NAMES)
    def test_dword_view_reads_low_half(self, state, name):
        state.set_register(name, 0x1122334455667788)
        assert state.get_register(DWORD_NAMES[name]) == 0x55667788

    @pytest.mark.parametrize("name", GPR_NAMES)
    def test_dword_write_zero_extends_every_register(self, state, name):
        state.set_register(name, MASK64)
        state.set_register(DWORD_NAMES[name], 0x80000001)
        assert state.get_register(name) == 0x80000001

    def test_16bit_write_preserves_upper_bits(self, state):
        state.set_register("rax", 0x1122334455667788)
        state.set_register("ax", 0xBEEF)
        assert state.get_register("rax") == 0x112233445566BEEF

    def test_8bit_write_preserves_upper_bits(self, state):
        state.set_register("rax", 0x1122334455667788)
        state.set_register("al", 0x00)
        assert state.get_register("rax") == 0x1122334455667700

    def test_high_byte_view(self, state):
        state.set_register("rax", 0x1122334455667788)
        assert state.get_register("ah") == 0x77
        state.set_register("ah", 0xAB)
        assert state.get_register("rax") == 0x112233445566AB88

    def test_extended_register_views(self, state):
        state.set_register("r9", 0xAAAABBBBCCCCDDDD)
        assert state.get_register("r9d") == 0xCCCCDDDD
        assert state.get_register("r9w") == 0xDDDD
        assert state.get_register("r9b") == 0xDD
        state.set_register("r9d", 5)
        assert state.get_register("r9") == 5

    def test_value_truncated_to_view_width(self, state):
        state.set_register("bl", 0x1FF)
        assert state.get_register("rbx") == 0xFF

    def test_case_insensitive_names(self, state):
        state.set_register("RCX", 7)
        assert state.get_register("Ecx") == 7

    def test_unknown_register(self, state):
        with pytest.raises(KeyError):
            state.get_register("r16")
        with pytest.raises(KeyError):
            lookup_register("xmm0")

    def test_dump_registers(self, state):
        state.set_register("r15", 3)
        regs = state.dump_registers()
        assert list(regs) == list(GPR_NAMES)
        assert regs["r15"] == 3


class TestXmmRegisters:
    """Test the 128-bit SSE register file."""

    @pytest.fixture
    def state(self):
        return CPUState(memory_size=0x100)

    def test_initially_zero(self, state):
        assert all(state.get_register(name) == 0 for name in XMM_NAMES)

    def test_full_width_round_trip(self, state):
        value = (1 << 127) | 0x0123456789ABCDEF
        state.set_register("XMM7", value)
        assert state.get_register("xmm7") == value

    def test_value_truncated_to_128_bits(self, state):
        state.set_register("xmm0", (1 << 128) | 5)
        assert state.get_register("xmm0") == 5

    def test_separate_from_general_registers(self, state):
        state.set_register("xmm0", 0xFFFF)
        assert state.get_register("rax") == 0

    def test_lanes(self):
        assert xmm_lanes(0x00000004_00000003_00000002_00000001) == [1, 2, 3, 4]

    def test_dump_xmm(self, state):
        state.set_register("xmm15", 9)
        dump = state.dump_xmm()
        assert list(dump) == list(XMM_NAMES)
        assert dump["xmm15"] == 9

    def test_unknown_xmm(self, state):
        with pytest.raises(KeyError):
            state.get_register("xmm16")


class TestMemory:
    """Test byte-addressable little-endian memory."""

    @pytest.fixture
    def state(self):
        return CPUState(memory_size=0x10000)

    def test_little_endian_int(self, state):
        state.write_int(0x100, 4, 0x12345678)
        assert state.read_memory(0x100, 4) == b"\x78\x56\x34\x12"
        assert state.read_int(0x100, 4) == 0x12345678

    def test_write_int_truncates(self, state):
        state.write_int(0x10, 1, 0x1FF)
        assert state.read_int(0x10, 1) == 0xFF

    def test_last_byte_accessible(self, state):
        state.write_memory(0xFFFF, b"\x01")
        assert state.read_memory(0xFFFF, 1) == b"\x01"

    def test_straddling_end_out_of_bounds(self, state):
        with pytest.raises(ExecError) as exc_info:
            state.read_memory(0xFFFC, 8)
        assert exc_info.value.kind == ExecErrorKind.MEMORY_OUT_OF_BOUNDS

    def test_far_address_out_of_bounds(self, state):
        with pytest.raises(ExecError) as exc_info:
            state.write_memory(0xFFFFFFFF, b"\x00")
        assert exc_info.value.kind == ExecErrorKind.MEMORY_OUT_OF_BOUNDS

    def test_failed_write_touches_nothing(self, state):
        with pytest.raises(ExecError):
            state.write_memory(0xFFFE, b"\x01\x02\x03")
        assert state.read_memory(0xFFFE, 2) == b"\x00\x00"


class TestFlags:
    """Test flag storage and RFLAGS composition."""

    def test_rflags_reserved_bit(self):
        state = CPUState(memory_size=0x100)
        assert state.rflags == 0x2

    def test_rflags_bits(self):
        state = CPUState(memory_size=0x100)
        state.flags.update(CF=True, ZF=True, SF=True, OF=True)
        assert state.rflags == 0x2 | 0x1 | 0x40 | 0x80 | 0x800

    def test_parity_and_aux_bits(self):
        state = CPUState(memory_size=0x100)
        state.flags.update(PF=True, AF=True)
        assert state.rflags == 0x2 | 0x4 | 0x10


class TestCPUStateValidation:
    """Test state validation."""

    def test_valid_state(self):
        state = CPUState(memory_size=0x100)
        assert state.validate() is True

    def test_register_out_of_range(self):
        state = CPUState(memory_size=0x100)
        state.registers[0] = MASK64 + 1
        assert state.validate() is False

    def test_non_bool_flag(self):
        state = CPUState(memory_size=0x100)
        state.flags["ZF"] = 1
        assert state.validate() is False

    def test_xmm_out_of_range(self):
        state = CPUState(memory_size=0x100)
        state.xmm[3] = 1 << 128
        assert state.validate() is False

    def test_unknown_flag(self):
        state = CPUState(memory_size=0x100)
        state.flags["DF"] = False
        assert state.validate() is False


class TestLifecycle:
    """Test snapshot and reset."""

    def test_snapshot_is_a_copy(self):
        state = CPUState(memory_size=0x100)
        snap = state.snapshot()
        state.set_register("rax", 1)
        state.set_register("xmm1", 2)
        state.flags["ZF"] = True
        assert snap["registers"]["rax"] == 0
        assert snap["xmm"]["xmm1"] == 0
        assert snap["flags"]["ZF"] is False
        assert snap["rflags"] == 0x2

    def test_reset(self):
        state = CPUState(memory_size=0x100)
        state.set_register("rax", 5)
        state.set_register("rsp", 0x10)
        state.flags["CF"] = True
        state.rip = 3
        state.write_memory(0, b"\xff")
        state.set_register("xmm9", 7)

        state.reset()

        assert state.get_register("rax") == 0
        assert state.get_register("rsp") == 0x100
        assert state.flags["CF"] is False
        assert state.rip == 0
        assert state.read_memory(0, 1) == b"\x00"
        assert state.get_register("xmm9") == 0

    def test_str(self):
        state = CPUState(memory_size=0x100)
        text = str(state)
        assert "RIP=0" in text
        assert "rsp=0x100" in text
        assert "ZF=0" in text
