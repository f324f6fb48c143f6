#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
two-phase bundle signing

DigestRecorder (genbin) and SignatureApplier (signbundle) both build the split
and universal APK Sets for the same bundle and walk them in the same order;
variants are matched up by name (see apkset.variant_name()).

Everything temporary lives in a Workspace, which is removed when the with
block exits (normally, with an error, or when interrupted).

>>> import os
>>> from bundlesigner.pipeline import Workspace
>>> with Workspace() as ws:
...     path = ws.path
...     os.path.isdir(path), os.path.isdir(ws.subdir("split"))
(True, True)
>>> os.path.exists(path)
False

"""

import hashlib
import os
import shutil
import tempfile

from types import TracebackType
from typing import Dict, List, Optional, Set, Tuple, Type

from .apkset import ApkVariant, walk_apk_set
from .bundletool import BundleExpander
from .errors import (BundleSignerError, CorrelationError, ParameterError, WorkspaceError,
                     _assert, _err)
from .signer import Signer
from .transfer import (SchemeFlags, TransferFile, VariantDigests, read_transfer_file,
                       write_transfer_file)

TMP_PREFIX = "bundle_signer"
TRANSFER_FILE = "transfer.bin"
V1_SIGNED_APK = "v1_signed.apk"
PASSES = (("split", False), ("universal", True))


class Workspace:
    """Temporary working directory; use as a context manager."""

    def __init__(self, parent: Optional[str] = None) -> None:
        self.parent = parent or os.environ.get("BUNDLESIGNER_TMPDIR") or None
        self._path: Optional[str] = None

    def __enter__(self) -> "Workspace":
        self._path = tempfile.mkdtemp(prefix=TMP_PREFIX, dir=self.parent)
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]],
                 exc_value: Optional[BaseException],
                 traceback: Optional[TracebackType]) -> None:
        if exc_type is None:
            self.cleanup()
            return
        # keep the original error
        try:
            self.cleanup()
        except WorkspaceError as e:
            _err(f"Error: {e}.")

    @property
    def path(self) -> str:
        if self._path is None:
            raise BundleSignerError("Workspace not active")
        return self._path

    def file(self, name: str) -> str:
        """Path of a (fixed-name, reused) file in the workspace."""
        return os.path.join(self.path, name)

    def subdir(self, name: str) -> str:
        """Create (if needed) and return a subdirectory of the workspace."""
        path = os.path.join(self.path, name)
        os.makedirs(path, exist_ok=True)
        return path

    def cleanup(self) -> None:
        """Remove the workspace; raises WorkspaceError on failure."""
        if self._path is None:
            return
        path, self._path = self._path, None
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise WorkspaceError(f"Failed to remove temporary directory {path!r}: {e}") from e


class DigestRecorder:
    """Records the v1 (and v2/v3) payloads for all variants of a bundle."""

    def __init__(self, signer: Signer, expander: BundleExpander, *,
                 verbose: bool = False) -> None:
        self.signer = signer
        self.expander = expander
        self.verbose = verbose

    def generate(self, bundle: str, flags: SchemeFlags, output: str,
                 workspace: Workspace) -> TransferFile:
        """
        Build & walk both APK Sets, recording payloads for each variant (split
        variants first, then universal); saves the transfer file as output
        (only when everything succeeded) and returns it.
        """
        if not os.path.isfile(bundle):
            raise ParameterError("Input bundle file does not exist")
        bundle_sha256 = sha256_file(bundle)
        partial = workspace.file(TRANSFER_FILE)
        for subdir, universal in PASSES:
            apks = self.expander.build_apk_set(bundle, workspace.path, universal=universal)
            groups = tuple(self.record(variant, flags, workspace)
                           for variant in walk_apk_set(apks, workspace.subdir(subdir)))
            write_transfer_file(partial, TransferFile(flags, groups, bundle_sha256=bundle_sha256),
                                append=True)
        transfer_file = read_transfer_file(partial)
        shutil.move(partial, output)
        return transfer_file

    def record(self, variant: ApkVariant, flags: SchemeFlags,
               workspace: Workspace) -> VariantDigests:
        """Payloads for a single variant; v2/v3 is computed on the v1-signed APK."""
        if self.verbose:
            print(f"Generating digest(s) for {variant.name}...")
        v1 = self.signer.v1_digest(variant.path, flags)
        v2v3 = None
        if flags.v2v3:
            v1_signed = workspace.file(V1_SIGNED_APK)
            self.signer.apply_v1(variant.path, v1, v1_signed)
            v2v3 = self.signer.v2v3_digest(v1_signed, flags)
        return VariantDigests(variant.name, v1, v2v3)


class SignatureApplier:
    """Applies the payloads from a transfer file to the variants of a bundle."""

    def __init__(self, signer: Signer, expander: BundleExpander, *,
                 verbose: bool = False) -> None:
        self.signer = signer
        self.expander = expander
        self.verbose = verbose

    def apply(self, bundle: str, transfer_file: str, output_dir: str,
              workspace: Workspace) -> List[str]:
        """
        Build & walk both APK Sets, signing each variant using its recorded
        payloads; saves the signed APKs and the split APK Set in output_dir.

        Returns the paths of the signed APKs.

        Raises TransferFileError (before writing anything) when the transfer
        file is malformed, CorrelationError when it does not match the bundle.
        """
        if not os.path.isfile(bundle):
            raise ParameterError("Bundle file does not exist")
        if not os.path.isfile(transfer_file):
            raise ParameterError("Passed Bin file does not exist")
        tf = read_transfer_file(transfer_file)
        digests = tf.digests_by_name()
        if tf.bundle_sha256 is not None and sha256_file(bundle) != tf.bundle_sha256:
            raise CorrelationError("Transfer file was generated for a different bundle")
        os.makedirs(output_dir, exist_ok=True)
        signed: List[str] = []
        seen: Set[str] = set()
        outputs: Dict[str, str] = {}
        split_apks = None
        for subdir, universal in PASSES:
            apks = self.expander.build_apk_set(bundle, workspace.path, universal=universal)
            if not universal:
                split_apks = apks
            for variant in walk_apk_set(apks, workspace.subdir(subdir)):
                group, output = self._lookup(variant, digests, seen, outputs, output_dir)
                self.sign(variant, group, tf.flags, output, workspace)
                signed.append(output)
        if missing := sorted(set(digests) - seen):
            raise CorrelationError(f"Recorded variant(s) not found in APK Sets: {', '.join(missing)}")
        _assert(split_apks is not None, "no split APK Set")
        shutil.copyfile(split_apks, os.path.join(output_dir, os.path.basename(bundle) + ".apks"))
        return signed

    def sign(self, variant: ApkVariant, group: VariantDigests, flags: SchemeFlags,
             output: str, workspace: Workspace) -> None:
        """Sign a single variant (v1, then v2/v3 if the transfer file has them)."""
        if self.verbose:
            print(f"Signing {variant.name} -> {output}")
        if flags.v2v3:
            _assert(group.v2v3 is not None, f"no v2/v3 payload for {variant.name!r}")
            v1_signed = workspace.file(V1_SIGNED_APK)
            self.signer.apply_v1(variant.path, group.v1, v1_signed)
            self.signer.apply_v2v3(v1_signed, group.v2v3, output)
        else:
            self.signer.apply_v1(variant.path, group.v1, output)

    @staticmethod
    def _lookup(variant: ApkVariant, digests: Dict[str, VariantDigests], seen: Set[str],
                outputs: Dict[str, str], output_dir: str) -> Tuple[VariantDigests, str]:
        if variant.name in seen:
            raise CorrelationError(f"Duplicate variant name: {variant.name!r}")
        seen.add(variant.name)
        if variant.name not in digests:
            raise CorrelationError(f"No recorded digest for variant {variant.name!r}")
        if variant.output_name in outputs:
            raise CorrelationError(f"Variants {outputs[variant.output_name]!r} and "
                                   f"{variant.name!r} have the same output name")
        outputs[variant.output_name] = variant.name
        return digests[variant.name], os.path.join(output_dir, variant.output_name)


def sha256_file(filename: str) -> str:
    """SHA-256 hex digest of file."""
    with open(filename, "rb") as fh:
        sha = hashlib.sha256()
        while chunk := fh.read(65536):
            sha.update(chunk)
        return sha.hexdigest()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
