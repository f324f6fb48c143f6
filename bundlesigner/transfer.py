#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
transfer (.bin) files

A transfer file carries the pre-signed digests from genbin to signbundle.  It
is plain text, one item per line:

  version: 0.2.0
  v2:true,v3:true,bundle-sha256:<hex>
  <variant name>          (contains ".apk")
  <v1 payload>
  <v2/v3 payload>         (only when v2 or v3 is enabled)
  <variant name>
  ...

Payloads are opaque to this module; they must not be empty and must not
contain ".apk" (which is what marks a variant name line).  The bundle-sha256
field is optional (and absent in version 0.1.x files).

>>> from bundlesigner.transfer import *
>>> flags = SchemeFlags(v2=True, v3=False)
>>> tf = TransferFile(flags, (VariantDigests("splits_base-master.apk", "AAAA", "BBBB"),
...                           VariantDigests("universal.apk", "CCCC", "DDDD")))
>>> print(tf.dump(), end="")
version: 0.2.0
v2:true,v3:false
splits_base-master.apk
AAAA
BBBB
universal.apk
CCCC
DDDD
>>> parse_transfer_file(tf.dump()) == tf
True
>>> [(r.variant_name, r.kind.value) for r in tf.groups[0].records]
[('splits_base-master.apk', 'v1'), ('splits_base-master.apk', 'v2v3')]

>>> text = "version: 0.1.4\\nv2:false,v3:false\\nuniversal.apk\\nAAAA\\n"
>>> tf = parse_transfer_file(text)
>>> tf.version, tf.flags, tf.bundle_sha256
('0.1.4', SchemeFlags(v2=False, v3=False), None)
>>> tf.groups
(VariantDigests(name='universal.apk', v1='AAAA', v2v3=None),)

>>> text = "version: 0.2.0\\nv2:true,v3:false\\nbase.apk\\nAAAA\\nBBBB\\nuniversal.apk\\nCCCC\\n"
>>> try:
...     parse_transfer_file(text)
... except TransferFileError as e:
...     print(e)
Line 8: unexpected end of file: missing v2/v3 digest for 'universal.apk'

"""

import os
import re

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .apkset import is_apk_entry
from .errors import CorrelationError, TransferFileError

FORMAT_VERSION = "0.2.0"
SUPPORTED_VERSIONS = ("0.1", "0.2")     # major.minor

VERSION_PREFIX = "version: "
BUNDLE_SHA256 = "bundle-sha256"

SHA256_RE = re.compile(r"[0-9a-f]{64}")
VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")


class SchemeKind(Enum):
    """Kind of digest record."""
    V1 = "v1"
    V2V3 = "v2v3"


@dataclass(frozen=True)
class SchemeFlags:
    """
    Active signature schemes; v1 is always enabled.

    >>> SchemeFlags(v2=True).dump()
    'v2:true,v3:false'
    >>> SchemeFlags(v3=True).v2v3, SchemeFlags().v2v3
    (True, False)

    """
    v2: bool = False
    v3: bool = False

    @property
    def v1(self) -> bool:
        return True

    @property
    def v2v3(self) -> bool:
        """Whether each variant has a v2/v3 digest in addition to the v1 one."""
        return self.v2 or self.v3

    def dump(self) -> str:
        return f"v2:{_dump_bool(self.v2)},v3:{_dump_bool(self.v3)}"


@dataclass(frozen=True)
class DigestRecord:
    """Single digest payload for a variant."""
    variant_name: str
    kind: SchemeKind
    payload: str


@dataclass(frozen=True)
class VariantDigests:
    """Digest record group for a variant: v1 payload and optional v2/v3 payload."""
    name: str
    v1: str
    v2v3: Optional[str] = None

    @property
    def records(self) -> Tuple[DigestRecord, ...]:
        recs = [DigestRecord(self.name, SchemeKind.V1, self.v1)]
        if self.v2v3 is not None:
            recs.append(DigestRecord(self.name, SchemeKind.V2V3, self.v2v3))
        return tuple(recs)


@dataclass(frozen=True)
class TransferFile:
    """Parsed transfer file."""
    flags: SchemeFlags
    groups: Tuple[VariantDigests, ...]
    version: str = FORMAT_VERSION
    bundle_sha256: Optional[str] = None

    def digests_by_name(self) -> Dict[str, VariantDigests]:
        """
        Map variant name to its digests.

        Raises CorrelationError when a name occurs more than once.
        """
        result: Dict[str, VariantDigests] = {}
        for group in self.groups:
            if group.name in result:
                raise CorrelationError(f"Duplicate variant name in transfer file: {group.name!r}")
            result[group.name] = group
        return result

    def dump(self, header: bool = True) -> str:
        """Dump transfer file (without the header lines if header=False)."""
        lines = []
        if header:
            lines += dump_header(self.flags, self.bundle_sha256, self.version)
        for group in self.groups:
            _check_group(group, self.flags)
            lines.append(group.name)
            lines += [r.payload for r in group.records]
        return "".join(line + "\n" for line in lines)


def dump_header(flags: SchemeFlags, bundle_sha256: Optional[str] = None,
                version: str = FORMAT_VERSION) -> List[str]:
    """Header lines: version and flags (plus bundle-sha256 if not None)."""
    flags_line = flags.dump()
    if bundle_sha256 is not None:
        if not SHA256_RE.fullmatch(bundle_sha256):
            raise ValueError(f"Invalid SHA-256 digest: {bundle_sha256!r}")
        flags_line += f",{BUNDLE_SHA256}:{bundle_sha256}"
    return [VERSION_PREFIX + version, flags_line]


class _State(Enum):
    EXPECT_HEADER = 1
    EXPECT_FLAGS = 2
    EXPECT_NAME_OR_EOF = 3
    EXPECT_V1_DIGEST = 4
    EXPECT_V2V3_DIGEST = 5


def parse_transfer_file(text: str) -> TransferFile:
    """
    Parse transfer file.

    Raises TransferFileError when the file is malformed (unsupported version,
    invalid flags line, missing digest line, unexpected end of file, etc.).
    """
    state = _State.EXPECT_HEADER
    version = ""
    flags = SchemeFlags()
    bundle_sha256 = None
    groups: List[VariantDigests] = []
    name = v1 = ""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    for lineno, line in enumerate(lines, 1):
        line = line.rstrip("\r")
        if not line:
            raise TransferFileError(f"Line {lineno}: unexpected empty line")
        if state is _State.EXPECT_HEADER:
            version = _parse_version_line(line, lineno)
            state = _State.EXPECT_FLAGS
        elif state is _State.EXPECT_FLAGS:
            flags, bundle_sha256 = _parse_flags_line(line, lineno)
            state = _State.EXPECT_NAME_OR_EOF
        elif state is _State.EXPECT_NAME_OR_EOF:
            if not is_apk_entry(line):
                raise TransferFileError(f"Line {lineno}: expected variant name, got digest")
            name, state = line, _State.EXPECT_V1_DIGEST
        elif state is _State.EXPECT_V1_DIGEST:
            if is_apk_entry(line):
                raise TransferFileError(f"Line {lineno}: missing v1 digest for {name!r}")
            if flags.v2v3:
                v1, state = line, _State.EXPECT_V2V3_DIGEST
            else:
                groups.append(VariantDigests(name, line))
                state = _State.EXPECT_NAME_OR_EOF
        else:
            if is_apk_entry(line):
                raise TransferFileError(f"Line {lineno}: missing v2/v3 digest for {name!r}")
            groups.append(VariantDigests(name, v1, line))
            state = _State.EXPECT_NAME_OR_EOF
    eof = f"Line {len(lines) + 1}: unexpected end of file"
    if state is _State.EXPECT_HEADER:
        raise TransferFileError(f"{eof}: missing version line")
    if state is _State.EXPECT_FLAGS:
        raise TransferFileError(f"{eof}: missing flags line")
    if state is _State.EXPECT_V1_DIGEST:
        raise TransferFileError(f"{eof}: missing v1 digest for {name!r}")
    if state is _State.EXPECT_V2V3_DIGEST:
        raise TransferFileError(f"{eof}: missing v2/v3 digest for {name!r}")
    return TransferFile(flags, tuple(groups), version, bundle_sha256)


def read_transfer_file(path: str) -> TransferFile:
    """Read & parse transfer file."""
    with open(path, "rb") as fh:
        data = fh.read()
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        lineno = data.count(b"\n", 0, e.start) + 1
        raise TransferFileError(f"Line {lineno}: invalid UTF-8")     # pylint: disable=W0707
    return parse_transfer_file(text)


def write_transfer_file(path: str, transfer_file: TransferFile, *,
                        append: bool = False) -> None:
    """
    Write transfer file.

    When append=True and path already exists, only the variant groups are
    appended; the existing header must match and the variant names must not
    already be present.

    >>> import os, tempfile
    >>> flags = SchemeFlags()
    >>> split = TransferFile(flags, (VariantDigests("splits_base-master.apk", "AAAA"),))
    >>> universal = TransferFile(flags, (VariantDigests("universal.apk", "BBBB"),))
    >>> with tempfile.TemporaryDirectory() as tmpdir:
    ...     path = os.path.join(tmpdir, "test.bin")
    ...     write_transfer_file(path, split, append=True)
    ...     write_transfer_file(path, universal, append=True)
    ...     try:
    ...         write_transfer_file(path, universal, append=True)
    ...     except CorrelationError as e:
    ...         print(e)
    ...     [g.name for g in read_transfer_file(path).groups]
    Duplicate variant name in transfer file: 'universal.apk'
    ['splits_base-master.apk', 'universal.apk']

    """
    transfer_file.digests_by_name()
    if append and os.path.exists(path):
        existing = read_transfer_file(path)
        if (existing.flags, existing.bundle_sha256) != (transfer_file.flags, transfer_file.bundle_sha256):
            raise TransferFileError("Cannot append: header mismatch")
        TransferFile(existing.flags, existing.groups + transfer_file.groups).digests_by_name()
        with open(path, "a", encoding="utf-8", newline="\n") as fh:
            fh.write(transfer_file.dump(header=False))
    else:
        with open(path, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(transfer_file.dump())


def _check_group(group: VariantDigests, flags: SchemeFlags) -> None:
    if not is_apk_entry(group.name) or _bad_line(group.name):
        raise ValueError(f"Invalid variant name: {group.name!r}")
    if (group.v2v3 is not None) != flags.v2v3:
        raise ValueError(f"Variant {group.name!r}: v2/v3 digest does not match flags")
    for rec in group.records:
        if not rec.payload or is_apk_entry(rec.payload) or _bad_line(rec.payload):
            raise ValueError(f"Variant {group.name!r}: invalid {rec.kind.value} payload")


def _bad_line(s: str) -> bool:
    return "\n" in s or "\r" in s


def _parse_version_line(line: str, lineno: int) -> str:
    if not line.startswith(VERSION_PREFIX):
        raise TransferFileError(f"Line {lineno}: expected version line")
    version = line[len(VERSION_PREFIX):]
    m = VERSION_RE.fullmatch(version)
    if not m or f"{m[1]}.{m[2]}" not in SUPPORTED_VERSIONS:
        raise TransferFileError(f"Line {lineno}: unsupported version: {version!r}")
    return version


def _parse_flags_line(line: str, lineno: int) -> Tuple[SchemeFlags, Optional[str]]:
    fields: Dict[str, str] = {}
    for item in line.split(","):
        k, sep, v = item.partition(":")
        if not sep or k in fields:
            raise TransferFileError(f"Line {lineno}: invalid flags line")
        fields[k] = v
    try:
        v2 = _parse_bool(fields.pop("v2"))
        v3 = _parse_bool(fields.pop("v3"))
    except (KeyError, ValueError):
        raise TransferFileError(f"Line {lineno}: invalid flags line")   # pylint: disable=W0707
    bundle_sha256 = fields.pop(BUNDLE_SHA256, None)
    if bundle_sha256 is not None and not SHA256_RE.fullmatch(bundle_sha256):
        raise TransferFileError(f"Line {lineno}: invalid {BUNDLE_SHA256}")
    if fields:
        raise TransferFileError(f"Line {lineno}: unknown flag(s): {', '.join(fields)}")
    return SchemeFlags(v2=v2, v3=v3), bundle_sha256


def _parse_bool(s: str) -> bool:
    if s not in ("true", "false"):
        raise ValueError(s)
    return s == "true"


def _dump_bool(b: bool) -> str:
    return "true" if b else "false"

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
