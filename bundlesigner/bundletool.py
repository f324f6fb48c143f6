#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
expand android app bundles (.aab) into APK Sets (.apks) using bundletool

bundletool always signs the APKs it builds; they are signed with a throwaway
key (generated with keytool) and that signature is replaced later.

The bundletool command can be set using $BUNDLESIGNER_BUNDLETOOL (e.g. "java
-jar /path/to/bundletool.jar"); keytool is found using $JAVA_HOME or $PATH.
"""

import abc
import os
import shlex
import shutil
import subprocess

from typing import List, Optional, Tuple

from .errors import BundleToolError, InvalidBundleError

BUNDLETOOL_CMD: Tuple[str, ...] = ("bundletool",)
UNIVERSAL = "universal"

KEYSTORE = "throwaway.keystore"
KEYSTORE_ALIAS = "default"
KEYSTORE_PASS = "defaultpass"
KEYSTORE_DNAME = "CN=bundlesigner"

# bundletool exceptions that mean the bundle itself is the problem
INVALID_BUNDLE_MARKERS = ("InvalidBundleException", "ValidationException",
                          "BundleInvalidZipException")


class BundleExpander(abc.ABC):
    """Builds APK Sets from a bundle."""

    @abc.abstractmethod
    def build_apk_set(self, bundle: str, workdir: str, *, universal: bool = False) -> str:
        """
        Build the split (or universal, when universal=True) APK Set for bundle
        in workdir; returns its path.
        """


class BundleTool(BundleExpander):
    """BundleExpander using the bundletool command."""

    def __init__(self, command: Optional[Tuple[str, ...]] = None,
                 keytool: Optional[str] = None, verbose: bool = False) -> None:
        if command is None:
            env = os.environ.get("BUNDLESIGNER_BUNDLETOOL")
            command = tuple(shlex.split(env)) if env else BUNDLETOOL_CMD
        self.command = command
        self.keytool = keytool
        self.verbose = verbose

    def build_apk_set(self, bundle: str, workdir: str, *, universal: bool = False) -> str:
        output = os.path.join(workdir, apk_set_name(bundle, universal=universal))
        keystore = os.path.join(workdir, KEYSTORE)
        if not os.path.exists(keystore):
            self.create_keystore(keystore)
        args = list(self.command) + [
            "build-apks", f"--bundle={bundle}", f"--output={output}",
            f"--ks={keystore}", f"--ks-key-alias={KEYSTORE_ALIAS}",
            f"--ks-pass=pass:{KEYSTORE_PASS}"]
        if universal:
            args.append("--mode=universal")
        if self.verbose:
            print(f"Building {'universal' if universal else 'split'} APK Set...")
        _run(args, what="bundletool", invalid_markers=INVALID_BUNDLE_MARKERS)
        if not os.path.isfile(output):
            raise BundleToolError(f"bundletool did not create {output!r}")
        return output

    def create_keystore(self, keystore: str) -> None:
        """Generate a throwaway PKCS #12 keystore for bundletool."""
        keytool = self.keytool or get_keytool()
        args = [keytool, "-genkeypair", "-keystore", keystore, "-storetype", "PKCS12",
                "-alias", KEYSTORE_ALIAS, "-storepass", KEYSTORE_PASS,
                "-keypass", KEYSTORE_PASS, "-keyalg", "RSA", "-keysize", "2048",
                "-validity", "10000", "-dname", KEYSTORE_DNAME, "-noprompt"]
        _run(args, what="keytool")


def apk_set_name(bundle: str, *, universal: bool = False) -> str:
    """
    File name of the APK Set built from bundle.

    >>> apk_set_name("/tmp/app-release.aab")
    'app-release.apks'
    >>> apk_set_name("/tmp/app.release.aab")
    'app.apks'
    >>> apk_set_name("/tmp/app.aab", universal=True)
    'universal.apks'
    >>> apk_set_name("/tmp/universal.aab")
    'universal-split.apks'

    """
    if universal:
        return f"{UNIVERSAL}.apks"
    base = bundle_base_name(bundle)
    return f"{base}-split.apks" if base == UNIVERSAL else f"{base}.apks"


def bundle_base_name(bundle: str) -> str:
    """Bundle file name up to the first "."."""
    return os.path.basename(bundle).split(".")[0]


def get_keytool(java_home: Optional[str] = None) -> str:
    """Find keytool using $JAVA_HOME/$PATH."""
    keytool = None
    if not java_home:
        java_home = os.environ.get("JAVA_HOME")
    if java_home:
        keytool = os.path.join(java_home, "bin/keytool")
    if not (keytool and os.path.exists(keytool)):
        keytool = shutil.which("keytool")
    if not (keytool and os.path.exists(keytool)):
        raise BundleToolError("Could not locate keytool")
    return keytool


def _run(args: List[str], *, what: str, invalid_markers: Tuple[str, ...] = ()) -> None:
    try:
        subprocess.run(args, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except subprocess.CalledProcessError as e:
        output = (e.stderr or b"").decode(errors="replace").strip()
        last = output.splitlines()[-1] if output else f"exit status {e.returncode}"
        if any(m in output for m in invalid_markers):
            raise InvalidBundleError(f"Invalid bundle: {last}") from e
        raise BundleToolError(f"{what} failed: {last}") from e
    except FileNotFoundError as e:
        raise BundleToolError(f"Could not run {what}: {e}") from e

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
