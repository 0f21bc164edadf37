from __future__ import annotations

import dataclasses
import struct

import pytest

from nds_elf import EM_ARM, ET_REL, build_elf, executable_to_elf, extract_executables
from nds_fixtures import ARM7_PAYLOAD, ARM9_PAYLOAD, make_rom
from nds_format import InvalidOffset, decode_header


def _sections(elf: bytes):
    shoff = struct.unpack_from("<I", elf, 0x20)[0]
    shnum, shstrndx = struct.unpack_from("<HH", elf, 0x30)
    hdrs = [struct.unpack_from("<10I", elf, shoff + i * 40) for i in range(shnum)]
    strtab = hdrs[shstrndx]
    names = elf[strtab[4] : strtab[4] + strtab[5]]

    def _name(off: int) -> str:
        return names[off : names.index(b"\x00", off)].decode("ascii")

    return {_name(h[0]): h for h in hdrs[1:]}


def test_extract_executables_slices_payloads():
    rom = make_rom()
    arm9, arm7 = extract_executables(decode_header(rom), rom)
    assert arm9.name == "arm9" and arm9.data == ARM9_PAYLOAD
    assert arm7.name == "arm7" and arm7.data == ARM7_PAYLOAD
    assert arm9.descriptor.load_address == 0x02000000


@pytest.mark.parametrize("cpu", ["arm9", "arm7"])
def test_extract_executables_rejects_out_of_range(cpu):
    rom = make_rom()
    header = decode_header(rom)
    exe = getattr(header, cpu)
    bad = dataclasses.replace(header, **{cpu: dataclasses.replace(exe, size=len(rom) - exe.offset + 1)})
    with pytest.raises(InvalidOffset) as exc:
        extract_executables(bad, rom)
    assert exc.value.field == cpu
    assert exc.value.limit == len(rom)


def test_extract_executables_accepts_range_ending_at_image_end():
    rom = make_rom()
    header = decode_header(rom)
    bad = dataclasses.replace(header, arm7=dataclasses.replace(header.arm7, offset=len(rom) - 4, size=4))
    _, arm7 = extract_executables(bad, rom)
    assert arm7.data == rom[-4:]


def test_build_elf_header_fields():
    elf = build_elf("arm9", b"\x01\x02\x03\x04\x05")
    assert elf[:4] == b"\x7fELF"
    assert elf[4] == 1  # ELFCLASS32
    assert elf[5] == 1  # little endian
    e_type, e_machine = struct.unpack_from("<HH", elf, 0x10)
    assert (e_type, e_machine) == (ET_REL, EM_ARM)
    assert struct.unpack_from("<H", elf, 0x30)[0] == 3


def test_build_elf_section_holds_payload():
    payload = bytes(range(7))
    elf = build_elf("arm7", payload)
    secs = _sections(elf)
    assert set(secs) == {"arm7", ".shstrtab"}
    text = secs["arm7"]
    assert text[1] == 1  # SHT_PROGBITS
    assert text[2] == 0x6  # SHF_ALLOC | SHF_EXECINSTR
    assert text[8] == 4
    assert elf[text[4] : text[4] + text[5]] == payload
    assert text[4] % 4 == 0


def test_executable_to_elf_uses_cpu_name():
    rom = make_rom()
    arm9, _ = extract_executables(decode_header(rom), rom)
    secs = _sections(executable_to_elf(arm9))
    assert "arm9" in secs
