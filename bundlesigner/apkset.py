#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
walk APK Sets (.apks)

An APK Set is a ZIP file produced by bundletool; every entry whose name
contains ".apk" is an APK variant, everything else (e.g. toc.pb) is skipped.

>>> import os, tempfile, zipfile
>>> from bundlesigner.apkset import walk_apk_set
>>> with tempfile.TemporaryDirectory() as tmpdir:
...     apks = os.path.join(tmpdir, "test.apks")
...     with zipfile.ZipFile(apks, "w") as zf:
...         zf.writestr("toc.pb", b"toc")
...         zf.writestr("splits/base-master.apk", b"master")
...         zf.writestr("splits/base-arm64_v8a.apk", b"arm64")
...     workdir = os.path.join(tmpdir, "work")
...     for v in walk_apk_set(apks, workdir):
...         print(v.name, v.entry_name, v.output_name, os.path.getsize(v.path))
splits_base-master.apk splits/base-master.apk splits_base-master.apk 6
splits_base-arm64_v8a.apk splits/base-arm64_v8a.apk splits_base-arm64_v8a.apk 5

"""

import os
import shutil
import zipfile

from dataclasses import dataclass
from typing import Iterator

from .errors import ApkSetError

APK_MARKER = ".apk"
UNIVERSAL_MARKER = "universal"


@dataclass(frozen=True)
class ApkVariant:
    """APK variant extracted from an APK Set."""
    name: str
    entry_name: str
    path: str

    @property
    def leaf_name(self) -> str:
        return self.entry_name.rsplit("/", 1)[-1]

    @property
    def qualifier(self) -> str:
        """Parent directory segment (device configuration) or ""."""
        parts = self.entry_name.split("/")
        return parts[-2] if len(parts) > 1 else ""

    @property
    def is_universal(self) -> bool:
        return UNIVERSAL_MARKER in self.leaf_name

    @property
    def output_name(self) -> str:
        """
        File name of the signed APK in the output directory.

        >>> ApkVariant("universal.apk", "universal.apk", "x").output_name
        'universal.apk'
        >>> ApkVariant("arm64-v8a_base.apk", "arm64-v8a/base.apk", "x").output_name
        'arm64-v8a_base.apk'
        >>> ApkVariant("base.apk", "base.apk", "x").output_name
        'base.apk'

        """
        if self.is_universal or not self.qualifier:
            return self.leaf_name
        return f"{self.qualifier}_{self.leaf_name}"


def is_apk_entry(name: str) -> bool:
    """Whether a ZIP entry (or transfer file line) names an APK."""
    return APK_MARKER in name


def variant_name(entry_name: str) -> str:
    r"""
    Variant name for an APK Set entry: everything up to and including the
    first ".apk", with "/" replaced by "_".

    >>> variant_name("splits/base-master.apk")
    'splits_base-master.apk'
    >>> variant_name("standalones/standalone-arm64_v8a_hdpi.apk")
    'standalones_standalone-arm64_v8a_hdpi.apk'
    >>> variant_name("universal.apk")
    'universal.apk'

    """
    return (entry_name.split(APK_MARKER, 1)[0] + APK_MARKER).replace("/", "_")


def walk_apk_set(apks: str, workdir: str) -> Iterator[ApkVariant]:
    """
    Extract APK variants from apks to workdir (keeping their directory
    structure) one at a time, in ZIP order; yields ApkVariant.

    Raises ApkSetError when the APK Set cannot be read or an entry cannot be
    written; the walk is aborted.
    """
    try:
        with zipfile.ZipFile(apks, "r") as zf:
            for info in zf.infolist():
                if info.is_dir() or not is_apk_entry(info.filename):
                    continue
                path = _extract_entry(zf, info, workdir)
                yield ApkVariant(variant_name(info.filename), info.filename, path)
    except (OSError, zipfile.BadZipFile) as e:
        raise ApkSetError(f"Failed to read APK Set {apks!r}: {e}")     # pylint: disable=W0707


def _extract_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo, workdir: str) -> str:
    root = os.path.realpath(workdir)
    path = os.path.realpath(os.path.join(root, *info.filename.split("/")))
    if os.path.commonpath([root, path]) != root or path == root:
        raise ApkSetError(f"Unsafe ZIP entry: {info.filename!r}")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with zf.open(info) as fhi, open(path, "wb") as fho:
        shutil.copyfileobj(fhi, fho)
    return path

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
