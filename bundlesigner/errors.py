#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
bundlesigner errors

Every error carries the process exit code main() uses for it.

>>> from bundlesigner.errors import exit_code_for, ParameterError, WorkspaceError
>>> exit_code_for(ParameterError("oops"))
2
>>> exit_code_for(WorkspaceError("oops"))
8
>>> exit_code_for(ValueError("oops"))
4
>>> _assert(1 == 1, "all good")
>>> try:
...     _assert(1 == 2, "oops")
... except AssertionFailed as e:
...     print(e)
Assertion failed: oops

"""

import sys
import zipfile

from typing import Optional

from apksigcopier import APKSigCopierError

EXIT_OK = 0
EXIT_VERIFY_FAILED = 1
EXIT_PARAMETER = 2
EXIT_MIN_SDK_VERSION = 3
EXIT_RUNTIME = 4
EXIT_INVALID_BUNDLE = 5
EXIT_BUNDLETOOL_IO = 6
EXIT_APK_FORMAT = 7
EXIT_TMP_CLEANUP = 8


class BundleSignerError(Exception):
    """Base class for errors."""
    exit_code = EXIT_RUNTIME


class ParameterError(BundleSignerError):
    """Missing or contradictory parameters."""
    exit_code = EXIT_PARAMETER


class MinSdkVersionError(BundleSignerError):
    """Could not determine the minimum platform version."""
    exit_code = EXIT_MIN_SDK_VERSION


class InvalidBundleError(BundleSignerError):
    """Bundle rejected by bundletool."""
    exit_code = EXIT_INVALID_BUNDLE


class BundleToolError(BundleSignerError):
    """Failed to expand bundle."""
    exit_code = EXIT_BUNDLETOOL_IO


class ApkSetError(BundleToolError):
    """Failed to read APK Set or extract its entries."""


class ApkFormatError(BundleSignerError):
    """Malformed APK."""
    exit_code = EXIT_APK_FORMAT


class TransferFileError(BundleSignerError):
    """Malformed transfer (.bin) file."""


class CorrelationError(BundleSignerError):
    """Transfer file does not match the rebuilt APK Sets."""


class SigningError(BundleSignerError):
    """Failed to create or embed a signature."""


class PasswordError(BundleSignerError):
    """Missing or incorrect password."""


class VerificationError(BundleSignerError):
    """APK did not verify."""
    exit_code = EXIT_VERIFY_FAILED


class WorkspaceError(BundleSignerError):
    """Failed to clean up temporary workspace."""
    exit_code = EXIT_TMP_CLEANUP


class AssertionFailed(BundleSignerError):
    """Assertion failed."""


def exit_code_for(e: Exception) -> int:
    """Exit code for exception (EXIT_RUNTIME if unclassified)."""
    if isinstance(e, BundleSignerError):
        return e.exit_code
    if isinstance(e, (APKSigCopierError, zipfile.BadZipFile)):
        return EXIT_APK_FORMAT
    return EXIT_RUNTIME


def _assert(b: bool, what: Optional[str] = None) -> None:
    """assert that is not removed with optimization."""
    if not b:
        raise AssertionFailed("Assertion failed" + (f": {what}" if what else ""))


# FIXME
def _err(*a: str) -> None:
    sys.stdout.flush()  # FIXME
    print(*a, file=sys.stderr)
    sys.stderr.flush()  # FIXME

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
