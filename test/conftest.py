#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

import hashlib
import os
import zipfile

from typing import Dict, List, Tuple

import pytest

from bundlesigner.bundletool import BundleExpander, apk_set_name
from bundlesigner.errors import CorrelationError
from bundlesigner.signer import Signer
from bundlesigner.transfer import SchemeFlags

SPLIT_ENTRIES = ("toc.pb", "arm64-v8a/base.apk")
UNIVERSAL_ENTRIES = ("toc.pb", "universal.apk")


class FakeExpander(BundleExpander):
    """Writes APK Sets whose APK contents depend on the bundle contents."""

    def __init__(self, split: Tuple[str, ...] = SPLIT_ENTRIES,
                 universal: Tuple[str, ...] = UNIVERSAL_ENTRIES) -> None:
        self.entries = {False: split, True: universal}
        self.builds: List[Tuple[str, bool]] = []

    def build_apk_set(self, bundle: str, workdir: str, *, universal: bool = False) -> str:
        self.builds.append((os.path.basename(bundle), universal))
        with open(bundle, "rb") as fh:
            data = fh.read()
        output = os.path.join(workdir, apk_set_name(bundle, universal=universal))
        with zipfile.ZipFile(output, "w") as zf:
            for name in self.entries[universal]:
                zf.writestr(name, data + b"|" + name.encode())
        return output


class FakeSigner(Signer):
    """
    "Signs" by appending markers; payloads are (prefixed) SHA-256 hex digests
    of the APK contents, checked when applied.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.flags: List[SchemeFlags] = []

    def v1_digest(self, apk: str, flags: SchemeFlags) -> str:
        self.calls.append(("v1_digest", os.path.basename(apk)))
        self.flags.append(flags)
        return "v1-" + _sha256(apk)

    def apply_v1(self, apk: str, payload: str, output_apk: str) -> None:
        self.calls.append(("apply_v1", os.path.basename(output_apk)))
        _check(apk, payload, "v1-")
        _write(output_apk, _read(apk) + b"|v1")

    def v2v3_digest(self, apk: str, flags: SchemeFlags) -> str:
        self.calls.append(("v2v3_digest", os.path.basename(apk)))
        self.flags.append(flags)
        return "v2v3-" + _sha256(apk)

    def apply_v2v3(self, apk: str, payload: str, output_apk: str) -> None:
        self.calls.append(("apply_v2v3", os.path.basename(output_apk)))
        _check(apk, payload, "v2v3-")
        _write(output_apk, _read(apk) + b"|v2v3")


def _check(apk: str, payload: str, prefix: str) -> None:
    if payload != prefix + _sha256(apk):
        raise CorrelationError(f"digest does not match {os.path.basename(apk)}")


def _sha256(path: str) -> str:
    return hashlib.sha256(_read(path)).hexdigest()


def _read(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def _write(path: str, data: bytes) -> None:
    with open(path, "wb") as fh:
        fh.write(data)


@pytest.fixture
def bundle(tmp_path) -> str:
    path = tmp_path / "app-release.aab"
    path.write_bytes(b"bundle contents")
    return str(path)


@pytest.fixture
def dirs(tmp_path) -> Dict[str, str]:
    result = {}
    for name in ("bin", "out"):
        (tmp_path / name).mkdir()
        result[name] = str(tmp_path / name)
    return result


@pytest.fixture(autouse=True)
def tmpdir_env(tmp_path, monkeypatch) -> None:
    (tmp_path / "workspaces").mkdir()
    monkeypatch.setenv("BUNDLESIGNER_TMPDIR", str(tmp_path / "workspaces"))

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
