#!/usr/bin/env python3
"""
ARM9/ARM7 payload extraction and wrapping into ELF32 relocatable objects.

The objects are deliberately minimal: one executable section named after the
CPU plus a section-name string table, so disassemblers can load the raw code.
"""

from __future__ import annotations

import dataclasses
import struct
from typing import List, Tuple

from nds_format import ExecutableDescriptor, InvalidOffset, NDSHeader

ELF_HEADER_SIZE = 52
ELF_SHDR_SIZE = 40

ET_REL = 1
EM_ARM = 40
EV_CURRENT = 1
EF_ARM_EABI_VER5 = 0x05000000

SHT_PROGBITS = 1
SHT_STRTAB = 3
SHF_ALLOC = 0x2
SHF_EXECINSTR = 0x4


@dataclasses.dataclass(frozen=True)
class ExecutablePayload:
    name: str
    descriptor: ExecutableDescriptor
    data: bytes


def _slice_executable(name: str, exe: ExecutableDescriptor, content: bytes) -> ExecutablePayload:
    return ExecutablePayload(name=name, descriptor=exe, data=bytes(content[exe.offset : exe.end]))


def extract_executables(header: NDSHeader, content: bytes) -> Tuple[ExecutablePayload, ExecutablePayload]:
    # Both ranges are checked before either payload is returned.
    for name, exe in (("arm9", header.arm9), ("arm7", header.arm7)):
        if exe.offset + exe.size > len(content):
            raise InvalidOffset(name, exe.offset, exe.size, len(content))
    return (
        _slice_executable("arm9", header.arm9, content),
        _slice_executable("arm7", header.arm7, content),
    )


def _align(n: int, a: int) -> int:
    return (n + a - 1) & ~(a - 1)


def _shdr(
    name_off: int,
    sh_type: int,
    flags: int,
    offset: int,
    size: int,
    addralign: int,
) -> bytes:
    return struct.pack("<10I", name_off, sh_type, flags, 0, offset, size, 0, 0, addralign, 0)


def build_elf(section_name: str, payload: bytes, align: int = 4) -> bytes:
    name_bytes = section_name.encode("ascii")
    shstrtab = b"\x00" + name_bytes + b"\x00.shstrtab\x00"
    text_name_off = 1
    shstrtab_name_off = 1 + len(name_bytes) + 1

    text_off = _align(ELF_HEADER_SIZE, align)
    strtab_off = text_off + len(payload)
    shoff = _align(strtab_off + len(shstrtab), 4)

    sections: List[bytes] = [
        b"\x00" * ELF_SHDR_SIZE,
        _shdr(text_name_off, SHT_PROGBITS, SHF_ALLOC | SHF_EXECINSTR, text_off, len(payload), align),
        _shdr(shstrtab_name_off, SHT_STRTAB, 0, strtab_off, len(shstrtab), 1),
    ]

    ident = b"\x7fELF" + bytes([1, 1, EV_CURRENT, 0]) + b"\x00" * 8
    ehdr = ident + struct.pack(
        "<HHIIIIIHHHHHH",
        ET_REL,
        EM_ARM,
        EV_CURRENT,
        0,  # e_entry
        0,  # e_phoff
        shoff,
        EF_ARM_EABI_VER5,
        ELF_HEADER_SIZE,
        0,
        0,
        ELF_SHDR_SIZE,
        len(sections),
        len(sections) - 1,
    )

    out = bytearray(ehdr)
    out += b"\x00" * (text_off - len(out))
    out += payload
    out += shstrtab
    out += b"\x00" * (shoff - len(out))
    for sh in sections:
        out += sh
    return bytes(out)


def executable_to_elf(payload: ExecutablePayload) -> bytes:
    return build_elf(payload.name, payload.data)
