#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
detached APK signing

The Signer interface has four operations, two per signature scheme:

  v1_digest    (genbin)      APK -> v1 payload (signed JAR metadata files)
  apply_v1     (signbundle)  APK + v1 payload -> v1-signed APK
  v2v3_digest  (genbin)      v1-signed APK -> v2/v3 payload (APK Signing Block)
  apply_v2v3   (signbundle)  v1-signed APK + v2/v3 payload -> signed APK

A payload is a single line of base64 (encoded JSON) that genbin records in the
transfer file; signbundle needs no key to apply it.

APKSigner implements Signer using apksigcopier to manipulate the APK (ZIP)
files, cryptography to create the signatures, and pyasn1 to create the PKCS #7
signature block files.  Since every APK is rebuilt by bundletool in both phases,
applying a payload only works when the rebuilt APK is identical to the one the
payload was created for; the recorded digests are checked to make sure.

>>> from bundlesigner.signer import v1_signer_name
>>> v1_signer_name("release.pk8")
'RELEASE'
>>> v1_signer_name("my key.p12")
'MY_KEY'
>>> v1_signer_name(".hidden")
'CERT'

"""

import abc
import base64
import binascii
import os
import re
import shutil
import struct
import zipfile

from dataclasses import dataclass, field
from hashlib import sha1, sha256, sha512
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

import apksigcopier
import simplejson

from asn1crypto.x509 import Certificate as X509Cert                 # type: ignore[import-untyped]
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.dsa import DSAPrivateKey
from cryptography.hazmat.primitives.asymmetric.ec import ECDSA, EllipticCurvePrivateKey
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.hashes import HashAlgorithm, SHA1, SHA256, SHA512
from cryptography.hazmat.primitives.serialization import pkcs12
from pyasn1.codec.der.decoder import decode as pyasn1_decode
from pyasn1.codec.der.encoder import encode as pyasn1_encode
from pyasn1.type import univ as pyasn1_univ
from pyasn1_modules import rfc2315                                  # type: ignore[import-untyped]

from .errors import (ApkFormatError, AssertionFailed, CorrelationError, MinSdkVersionError,
                     PasswordError, SigningError, TransferFileError, _assert)
from .transfer import SchemeFlags

Halgo = Union[HashAlgorithm, ECDSA]
HalgoFun = Union[Callable[[], Halgo], Type[HashAlgorithm]]

PrivKey = Union[RSAPrivateKey, DSAPrivateKey, EllipticCurvePrivateKey]
PrivKeyTypes = (RSAPrivateKey, DSAPrivateKey, EllipticCurvePrivateKey)

# https://source.android.com/docs/security/features/apksigning/v2#apk-signing-block-format
APK_SIGNATURE_SCHEME_V2_BLOCK_ID = 0x7109871a
APK_SIGNATURE_SCHEME_V3_BLOCK_ID = 0xf05368c0
APK_SIG_BLOCK_MAGIC = b"APK Sig Block 42"

# v2 signed data attribute: v3 signature must be present too
STRIPPING_PROTECTION_ATTR_ID = 0xbeeff00d

# FIXME: RSA-PSS & verity
HASHERS: Dict[int, Tuple[Any, HalgoFun, bool]] = {
    # id     hasher  halgo                     pkcs1v15
    0x0103: (sha256, SHA256, True),
    0x0104: (sha512, SHA512, True),
    0x0201: (sha256, lambda: ECDSA(SHA256()), False),
    0x0202: (sha512, lambda: ECDSA(SHA512()), False),
    0x0301: (sha256, SHA256, False),
}

CHUNK_SIZE = 1048576

MIN_SDK, MAX_SDK = 24, 2 * 1024**3 - 1

# JAR signatures using SHA-256 are only supported by API level >= 18
JAR_SHA256_MIN_SDK = 18

JAR_MANIFEST = "META-INF/MANIFEST.MF"
# signature (block) files directly in META-INF, with plain ASCII names
JAR_META_FILE_RE = re.compile(r"\AMETA-INF/([0-9A-Za-z_-]+\.(SF|RSA|DSA|EC)|MANIFEST\.MF)\Z")
JAR_CREATED_BY = "1.0 (Android)"
JAR_HASHERS = {
    #         OID                                                 hasher halgo
    "SHA1": (pyasn1_univ.ObjectIdentifier("1.3.14.3.2.26"), sha1, SHA1),
    "SHA256": (pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.2.1"), sha256, SHA256),
}

DIGEST_ENCRYPTION_ALGORITHM = dict(
    RSA=dict(SHA1=pyasn1_univ.ObjectIdentifier("1.2.840.113549.1.1.5"),
             SHA256=pyasn1_univ.ObjectIdentifier("1.2.840.113549.1.1.11")),
    DSA=dict(SHA1=pyasn1_univ.ObjectIdentifier("1.2.840.10040.4.3"),
             SHA256=pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.3.2")),
    EC=dict(SHA1=pyasn1_univ.ObjectIdentifier("1.2.840.10045.4.1"),
            SHA256=pyasn1_univ.ObjectIdentifier("1.2.840.10045.4.3.2")),
)

PRIVKEY_TYPE = {RSAPrivateKey: "RSA", DSAPrivateKey: "DSA", EllipticCurvePrivateKey: "EC"}

# binary XML (AndroidManifest.xml)
ANDROID_MANIFEST = "AndroidManifest.xml"
RES_XML_TYPE = 0x0003
RES_XML_START_ELEMENT_TYPE = 0x0102
RES_XML_RESOURCE_MAP_TYPE = 0x0180
TYPE_INT_DEC, TYPE_INT_HEX, TYPE_INT_BOOLEAN = 0x10, 0x11, 0x12
ATTR_DEBUGGABLE = 0x0101000f
ATTR_MIN_SDK_VERSION = 0x0101020c


@dataclass(frozen=True)
class SignerConfig:
    """Private key, certificate (DER), and v1 signer name."""
    name: str
    key: PrivKey = field(repr=False)
    cert: bytes = field(repr=False)

    @property
    def key_type(self) -> str:
        alg, = [e for c, e in PRIVKEY_TYPE.items() if isinstance(self.key, c)]
        return alg

    @property
    def public_key(self) -> bytes:
        """SubjectPublicKeyInfo (DER) from the certificate."""
        return X509Cert.load(self.cert).public_key.dump()

    @property
    def signature_algorithm_id(self) -> int:
        """Signature algorithm for v2/v3 (like apksigner picks it)."""
        if self.key_type == "RSA":
            return 0x0103 if self.key.key_size <= 3072 else 0x0104
        if self.key_type == "EC":
            return 0x0201 if self.key.key_size <= 256 else 0x0202
        return 0x0301


class Signer(abc.ABC):
    """Computes (signed) digests and embeds signatures."""

    @abc.abstractmethod
    def v1_digest(self, apk: str, flags: SchemeFlags) -> str:
        """Returns the v1 payload for apk."""

    @abc.abstractmethod
    def apply_v1(self, apk: str, payload: str, output_apk: str) -> None:
        """Save apk with the v1 signature from payload as output_apk."""

    @abc.abstractmethod
    def v2v3_digest(self, apk: str, flags: SchemeFlags) -> str:
        """Returns the v2/v3 payload for the v1-signed apk."""

    @abc.abstractmethod
    def apply_v2v3(self, apk: str, payload: str, output_apk: str) -> None:
        """Save the v1-signed apk with the v2/v3 signatures from payload as output_apk."""


class APKSigner(Signer):
    """
    Signer using apksigcopier & cryptography.

    The configs, min_sdk, max_sdk & debuggable_apk_permitted are only used by
    the digest operations; applying payloads needs none of them.
    """

    def __init__(self, configs: Tuple[SignerConfig, ...] = (), *,
                 min_sdk: Optional[int] = None, max_sdk: Optional[int] = None,
                 debuggable_apk_permitted: bool = True) -> None:
        if len(set(c.name for c in configs)) != len(configs):
            raise SigningError("Duplicate v1 signer names")
        self.configs = configs
        self.min_sdk = min_sdk
        self.max_sdk = max_sdk
        self.debuggable_apk_permitted = debuggable_apk_permitted

    def v1_digest(self, apk: str, flags: SchemeFlags) -> str:
        _assert(bool(self.configs), "signer configs required")
        if not self.debuggable_apk_permitted and is_debuggable(apk):
            raise SigningError(f"Refusing to sign debuggable APK: {os.path.basename(apk)}")
        min_sdk = self.min_sdk if self.min_sdk is not None else min_sdk_version(apk)
        hash_algo = "SHA256" if min_sdk >= JAR_SHA256_MIN_SDK else "SHA1"
        if hash_algo == "SHA1" and any(c.key_type == "EC" for c in self.configs):
            raise SigningError(f"ECDSA signatures require minSdkVersion >= {JAR_SHA256_MIN_SDK}")
        xaas = tuple(n for n, b in ((2, flags.v2), (3, flags.v3)) if b)
        manifest = create_v1_manifest(apk, hash_algo)
        sf = create_v1_signature_file(manifest, hash_algo, xaas)
        files = []
        for config in self.configs:
            block, ext = create_signature_block_file(sf, config, hash_algo)
            files += [(f"META-INF/{config.name}.SF", sf), (f"META-INF/{config.name}.{ext}", block)]
        files.append((JAR_MANIFEST, manifest.raw_data))
        return dump_payload(dict(hash_algo=hash_algo, files=[[fn, _b64(d)] for fn, d in files]))

    def apply_v1(self, apk: str, payload: str, output_apk: str) -> None:
        data = load_payload(payload)
        try:
            hash_algo = data["hash_algo"]
            files = [(fn, _unb64(d)) for fn, d in data["files"]]
        except (KeyError, TypeError, ValueError):
            raise TransferFileError("Invalid v1 payload")       # pylint: disable=W0707
        if hash_algo not in JAR_HASHERS or not files or files[-1][0] != JAR_MANIFEST \
                or not all(is_v1_meta_file(fn) for fn, _ in files):
            raise TransferFileError("Invalid v1 payload")
        date_time = apksigcopier.copy_apk(apk, output_apk, exclude=apksigcopier.exclude_meta)
        if create_v1_manifest(output_apk, hash_algo).raw_data != files[-1][1]:
            raise CorrelationError(f"v1 digest does not match {os.path.basename(apk)}")
        # stored, so the compressed data cannot differ between zlib versions
        stored = {fn: dict(compress_type=zipfile.ZIP_STORED) for fn, _ in files}
        meta = tuple((zipfile.ZipInfo(fn), d) for fn, d in files)
        apksigcopier.patch_meta(meta, output_apk, date_time=date_time,
                                differences=dict(files=stored))

    def v2v3_digest(self, apk: str, flags: SchemeFlags) -> str:
        _assert(bool(self.configs), "signer configs required")
        _assert(flags.v2v3, "v2 and/or v3 must be enabled")
        if flags.v3 and len(self.configs) > 1:
            raise SigningError("v3 signing supports a single signer only")
        if apksigcopier.extract_v2_sig(apk, expected=False) is not None:
            raise SigningError(f"APK already has an APK Signing Block: {os.path.basename(apk)}")
        sb_offset = apksigcopier.zip_data(apk).cd_offset
        aids = sorted(set(c.signature_algorithm_id for c in self.configs))
        digests = {aid: apk_digest_chunked(apk, sb_offset, HASHERS[aid][0]) for aid in aids}
        pairs = []
        if flags.v2:
            attrs = _v2_stripping_protection() if flags.v3 else b""
            signers = [create_scheme_signer(c, digests, attrs=attrs) for c in self.configs]
            pairs.append((APK_SIGNATURE_SCHEME_V2_BLOCK_ID, _scheme_block(signers)))
        if flags.v3:
            max_sdk = self.max_sdk if self.max_sdk is not None else MAX_SDK
            sdk = (min(MIN_SDK, max_sdk), max_sdk)
            signers = [create_scheme_signer(c, digests, sdk=sdk) for c in self.configs]
            pairs.append((APK_SIGNATURE_SCHEME_V3_BLOCK_ID, _scheme_block(signers)))
        return dump_payload(dict(
            offset=sb_offset, block=_b64(dump_apk_signing_block(pairs)),
            digests={str(aid): d.hex() for aid, d in digests.items()}))

    def apply_v2v3(self, apk: str, payload: str, output_apk: str) -> None:
        data = load_payload(payload)
        try:
            sb_offset = int(data["offset"])
            sig_block = _unb64(data["block"])
            digests = {int(k): bytes.fromhex(v) for k, v in data["digests"].items()}
        except (AttributeError, KeyError, TypeError, ValueError):
            raise TransferFileError("Invalid v2/v3 payload")    # pylint: disable=W0707
        if not digests or not all(aid in HASHERS for aid in digests):
            raise TransferFileError("Invalid v2/v3 payload")
        mismatch = CorrelationError(f"v2/v3 digest does not match {os.path.basename(apk)}")
        if apksigcopier.zip_data(apk).cd_offset != sb_offset:
            raise mismatch
        for aid, digest in digests.items():
            if apk_digest_chunked(apk, sb_offset, HASHERS[aid][0]) != digest:
                raise mismatch
        shutil.copyfile(apk, output_apk)
        apksigcopier.patch_v2_sig((sb_offset, sig_block), output_apk)


def load_signer_config(*, key: Optional[str] = None, cert: Optional[str] = None,
                       keystore: Optional[str] = None, password: Optional[str] = None,
                       name: Optional[str] = None) -> SignerConfig:
    """
    Load private key & certificate: either key (PKCS #8, DER or PEM) + cert
    (X.509, DER or PEM), or keystore (PKCS #12).

    The v1 signer name defaults to the key/keystore file name (see
    v1_signer_name()).
    """
    passwd = password.encode() if password else None
    if keystore:
        if key or cert:
            raise SigningError("Specify either a keystore or a key and certificate")
        with open(keystore, "rb") as fh:
            try:
                privkey, crt, _ = pkcs12.load_key_and_certificates(fh.read(), passwd)
            except (TypeError, ValueError) as e:
                raise PasswordError(f"Failed to load keystore: {e}")    # pylint: disable=W0707
        if privkey is None or crt is None:
            raise SigningError("Keystore must contain a private key and certificate")
        cert_bytes = crt.public_bytes(serialization.Encoding.DER)
        source = keystore
    else:
        if not (key and cert):
            raise SigningError("Specify both a key and a certificate")
        privkey = _load_private_key(key, passwd)
        cert_bytes = _load_certificate(cert)
        source = key
    if not isinstance(privkey, PrivKeyTypes):
        raise SigningError(f"Unsupported private key type: {privkey.__class__.__name__}")
    config = SignerConfig(v1_signer_name(name or source), privkey, cert_bytes)
    pubkey = privkey.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    if pubkey != config.public_key:
        raise SigningError("Certificate does not match private key")
    return config


def _load_private_key(path: str, password: Optional[bytes]) -> Any:
    with open(path, "rb") as fh:
        data = fh.read()
    try:
        if data.startswith(b"-----BEGIN"):
            return serialization.load_pem_private_key(data, password)
        return serialization.load_der_private_key(data, password)
    except (TypeError, ValueError) as e:
        if "password" in str(e).lower():
            raise PasswordError(str(e))                         # pylint: disable=W0707
        raise SigningError(f"Failed to load private key: {e}")  # pylint: disable=W0707


def _load_certificate(path: str) -> bytes:
    with open(path, "rb") as fh:
        data = fh.read()
    try:
        if data.startswith(b"-----BEGIN"):
            crt = x509.load_pem_x509_certificate(data)
        else:
            crt = x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise SigningError(f"Failed to load certificate: {e}")  # pylint: disable=W0707
    return crt.public_bytes(serialization.Encoding.DER)


def v1_signer_name(name: str) -> str:
    """v1 signer name: base name up to the first ".", upper case, [A-Z0-9_-] only."""
    base = os.path.basename(name).split(".")[0].upper()
    return "".join(c if c.isascii() and (c.isalnum() or c in "_-") else "_"
                   for c in base) or "CERT"


def min_sdk_version(apk: str) -> int:
    """
    minSdkVersion from the APK's AndroidManifest.xml (1 when not specified).

    Raises MinSdkVersionError when it cannot be determined.
    """
    try:
        values = manifest_attribute_values(_read_manifest(apk), ATTR_MIN_SDK_VERSION)
    except ApkFormatError as e:
        raise MinSdkVersionError(f"Failed to determine APK's minimum supported "  # pylint: disable=W0707
                                 f"platform version: {e}")
    if not values:
        return 1
    data_type, data = values[0]
    if data_type not in (TYPE_INT_DEC, TYPE_INT_HEX):
        raise MinSdkVersionError("Failed to determine APK's minimum supported platform "
                                 "version: minSdkVersion is not an integer")
    return data


def is_debuggable(apk: str) -> bool:
    """Whether the APK's AndroidManifest.xml has android:debuggable=true."""
    values = manifest_attribute_values(_read_manifest(apk), ATTR_DEBUGGABLE)
    return any(t == TYPE_INT_BOOLEAN and d != 0 for t, d in values)


def _read_manifest(apk: str) -> bytes:
    try:
        with zipfile.ZipFile(apk, "r") as zf:
            return zf.read(ANDROID_MANIFEST)
    except KeyError:
        raise ApkFormatError(f"No {ANDROID_MANIFEST} in APK")    # pylint: disable=W0707
    except zipfile.BadZipFile as e:
        raise ApkFormatError(f"Malformed APK: {e}")             # pylint: disable=W0707


def manifest_attribute_values(data: bytes, res_id: int) -> List[Tuple[int, int]]:
    """
    Find attributes with resource ID res_id in binary XML.

    Returns a list of (data type, data) for all start elements.

    >>> resmap = struct.pack("<HHL", RES_XML_RESOURCE_MAP_TYPE, 8, 16) + struct.pack("<LL", 0x01010003, ATTR_MIN_SDK_VERSION)
    >>> ext = struct.pack("<LLHHHHHH", 0, 0, 20, 20, 1, 0, 0, 0)
    >>> attr = struct.pack("<LLLHBBL", 0, 1, 0xffffffff, 8, 0, TYPE_INT_DEC, 21)
    >>> elem = struct.pack("<HHLLL", RES_XML_START_ELEMENT_TYPE, 16, 16 + 40, 1, 0xffffffff) + ext + attr
    >>> doc = struct.pack("<HHL", RES_XML_TYPE, 8, 8 + len(resmap) + len(elem)) + resmap + elem
    >>> manifest_attribute_values(doc, ATTR_MIN_SDK_VERSION)
    [(16, 21)]
    >>> manifest_attribute_values(doc, ATTR_DEBUGGABLE)
    []

    """
    try:
        xml_type, pos = struct.unpack("<HH", data[:4])
        _assert(xml_type == RES_XML_TYPE)
        names: List[int] = []
        values = []
        while pos + 8 <= len(data):
            ctype, hsize, csize = struct.unpack("<HHL", data[pos:pos + 8])
            _assert(hsize >= 8 and csize >= hsize and pos + csize <= len(data))
            if ctype == RES_XML_RESOURCE_MAP_TYPE:
                n = (csize - hsize) // 4
                ids = struct.unpack(f"<{n}L", data[pos + hsize:pos + hsize + 4 * n])
                names = [i for i, x in enumerate(ids) if x == res_id]
            elif ctype == RES_XML_START_ELEMENT_TYPE:
                ext = pos + hsize
                attr_start, attr_size, attr_count = struct.unpack("<HHH", data[ext + 8:ext + 14])
                for i in range(attr_count):
                    off = ext + attr_start + i * attr_size
                    _assert(off + 20 <= pos + csize)
                    name, = struct.unpack("<L", data[off + 4:off + 8])
                    _, _, data_type, value = struct.unpack("<HBBL", data[off + 12:off + 20])
                    if name in names:
                        values.append((data_type, value))
            pos += csize
    except (struct.error, AssertionFailed):
        raise ApkFormatError(f"Malformed {ANDROID_MANIFEST}")    # pylint: disable=W0707
    return values


@dataclass(frozen=True)
class V1Manifest:
    """JAR manifest (MANIFEST.MF) and its individual entry sections."""
    raw_data: bytes
    sections: Tuple[Tuple[str, bytes], ...]


def create_v1_manifest(apk: str, hash_algo: str) -> V1Manifest:
    """Create JAR manifest (MANIFEST.MF) for all non-metadata entries of apk."""
    hasher = JAR_HASHERS[hash_algo][1]
    sections = []
    with zipfile.ZipFile(apk, "r") as zf:
        infos = [i for i in zf.infolist() if not apksigcopier.exclude_meta(i.filename)]
        if len(set(i.filename for i in infos)) != len(infos):
            raise ApkFormatError("Duplicate ZIP entries")
        for info in sorted(infos, key=lambda info: info.header_offset):
            h = hasher()
            with zf.open(info) as fh:
                while data := fh.read(4096):
                    h.update(data)
            hdrs = (("Name", info.filename), _mf_hdr_dig(hash_algo, _b64(h.digest())))
            sections.append((info.filename, _mf_hdrs_join(hdrs).encode()))
    main = _mf_hdrs_join((("Manifest-Version", "1.0"), ("Created-By", JAR_CREATED_BY)))
    return V1Manifest(main.encode() + b"".join(s for _, s in sections), tuple(sections))


def create_v1_signature_file(manifest: V1Manifest, hash_algo: str,
                             x_android_apk_signed: Tuple[int, ...] = ()) -> bytes:
    """Create JAR signature file (.SF) for the manifest."""
    hasher = JAR_HASHERS[hash_algo][1]
    hdrs = [("Signature-Version", "1.0"), ("Created-By", JAR_CREATED_BY),
            _mf_hdr_dig(hash_algo, _b64(hasher(manifest.raw_data).digest()), "-Manifest")]
    if x_android_apk_signed:
        hdrs.append(("X-Android-APK-Signed", ", ".join(map(str, x_android_apk_signed))))
    entries = [_mf_hdrs_join((("Name", fn), _mf_hdr_dig(hash_algo, _b64(hasher(raw).digest()))))
               for fn, raw in manifest.sections]
    return "".join([_mf_hdrs_join(tuple(hdrs))] + entries).encode()


def create_signature_block_file(sf: bytes, config: SignerConfig,
                                hash_algo: str) -> Tuple[bytes, str]:
    """Create JAR signature block file (PKCS #7); returns (data, extension)."""
    alg = config.key_type
    oid, _, halgo = JAR_HASHERS[hash_algo]
    crt = pyasn1_decode(config.cert, asn1Spec=rfc2315.Certificate())[0]
    sig = create_signature(config.key, sf, (lambda: ECDSA(halgo())) if alg == "EC" else halgo,
                           pkcs1v15=alg == "RSA")
    sdat = rfc2315.SignedData()
    sdat["version"] = 1
    sdat["digestAlgorithms"][0]["algorithm"] = oid
    sdat["contentInfo"] = rfc2315.ContentInfo()
    sdat["contentInfo"]["contentType"] = rfc2315.ContentType(rfc2315.data)
    sdat["certificates"][0]["certificate"] = crt
    sinf = sdat["signerInfos"][0]
    sinf["version"] = 1
    sinf["issuerAndSerialNumber"]["issuer"] = crt["tbsCertificate"]["issuer"]
    sinf["issuerAndSerialNumber"]["serialNumber"] = crt["tbsCertificate"]["serialNumber"]
    sinf["digestAlgorithm"]["algorithm"] = oid
    sinf["digestEncryptionAlgorithm"]["algorithm"] = DIGEST_ENCRYPTION_ALGORITHM[alg][hash_algo]
    sinf["encryptedDigest"] = sig
    cinf = rfc2315.ContentInfo()
    cinf["contentType"] = rfc2315.ContentType(rfc2315.signedData)
    cinf["content"] = pyasn1_univ.Any(pyasn1_encode(sdat))
    return pyasn1_encode(cinf), alg


def create_scheme_signer(config: SignerConfig, digests: Dict[int, bytes], *,
                         attrs: bytes = b"", sdk: Optional[Tuple[int, int]] = None) -> bytes:
    """
    Create APK Signature Scheme v2 (sdk is None) or v3 Block -> signer.

    The signed data contains the digest for the config's signature algorithm
    and its certificate.
    """
    aid = config.signature_algorithm_id
    _, halgo, pkcs1v15 = HASHERS[aid]
    minmax = struct.pack("<LL", *sdk) if sdk else b""
    digest = _as_len_prefixed_field(struct.pack("<LL", aid, len(digests[aid])) + digests[aid])
    signed_data = (_as_len_prefixed_field(digest) +
                   _as_len_prefixed_field(_as_len_prefixed_field(config.cert)) +
                   minmax + _as_len_prefixed_field(attrs))
    sig = create_signature(config.key, signed_data, halgo, pkcs1v15=pkcs1v15)
    signature = _as_len_prefixed_field(struct.pack("<LL", aid, len(sig)) + sig)
    return (_as_len_prefixed_field(signed_data) + minmax +
            _as_len_prefixed_field(signature) + _as_len_prefixed_field(config.public_key))


def _v2_stripping_protection() -> bytes:
    return _as_len_prefixed_field(struct.pack("<LL", STRIPPING_PROTECTION_ATTR_ID, 3))


def _scheme_block(signers: List[bytes]) -> bytes:
    return _as_len_prefixed_field(b"".join(map(_as_len_prefixed_field, signers)))


def dump_apk_signing_block(pairs: List[Tuple[int, bytes]]) -> bytes:
    """
    Dump APK Signing Block from (pair ID, value) pairs.

    >>> blk = dump_apk_signing_block([(0x7109871a, b"foo")])
    >>> len(blk), blk[:8] == blk[-24:-16], blk[-16:]
    (47, True, b'APK Sig Block 42')

    """
    data = b"".join(struct.pack("<QL", len(v) + 4, i) + v for i, v in pairs)
    size = int.to_bytes(len(data) + 24, 8, "little")
    return size + data + size + APK_SIG_BLOCK_MAGIC


def apk_digest_chunked(apkfile: str, sb_offset: int, hasher: Any) -> bytes:
    """
    Calculate chunked digest for APK: ZIP entries, central directory & EOCD
    (with the central directory offset replaced by sb_offset).
    """
    def f(size: int) -> None:
        while size > 0:
            data = fh.read(min(size, CHUNK_SIZE))
            if not data:
                break
            size -= len(data)
            digests.append(_chunk_digest(data, hasher))
    digests: List[bytes] = []
    cd_offset, eocd_offset, _ = apksigcopier.zip_data(apkfile)
    with open(apkfile, "rb") as fh:
        f(sb_offset)
        fh.seek(cd_offset)
        f(eocd_offset - cd_offset)
        fh.seek(eocd_offset)
        data = fh.read()
        data = data[:16] + int.to_bytes(sb_offset, 4, "little") + data[20:]
        while data:
            digests.append(_chunk_digest(data[:CHUNK_SIZE], hasher))
            data = data[CHUNK_SIZE:]
    top = b"\x5a" + int.to_bytes(len(digests), 4, "little") + b"".join(digests)
    return bytes(hasher(top).digest())


def _chunk_digest(chunk: bytes, hasher: Any) -> bytes:
    return bytes(hasher(b"\xa5" + int.to_bytes(len(chunk), 4, "little") + chunk).digest())


# FIXME: type checking?!
def create_signature(key: PrivKey, msg: bytes, halgo: HalgoFun, *,
                     pkcs1v15: bool = False) -> bytes:
    """Create signature from key on message (msg) using halgo (and padding for RSA)."""
    algorithm = halgo()
    if isinstance(key, RSAPrivateKey):
        assert pkcs1v15 and isinstance(algorithm, HashAlgorithm)
        return key.sign(msg, PKCS1v15(), algorithm)
    elif isinstance(key, DSAPrivateKey):
        assert isinstance(algorithm, HashAlgorithm)
        return key.sign(msg, algorithm)
    else:
        assert isinstance(algorithm, ECDSA)
        return key.sign(msg, algorithm)


def is_v1_meta_file(filename: str) -> bool:
    r"""
    Whether filename is a v1 signature file, signature block file or manifest
    that may be embedded from a payload.

    >>> is_v1_meta_file("META-INF/RELEASE.RSA")
    True
    >>> is_v1_meta_file("META-INF/oops/RELEASE.RSA")
    False
    >>> is_v1_meta_file("META-INF/\u732b.SF")
    False
    >>> is_v1_meta_file("classes.dex")
    False

    """
    return bool(apksigcopier.is_meta(filename) and JAR_META_FILE_RE.fullmatch(filename))


def dump_payload(obj: Dict[str, Any]) -> str:
    """Encode payload as a single line of base64 (so it can never contain ".apk")."""
    return _b64(simplejson.dumps(obj, sort_keys=True, separators=(",", ":")).encode())


def load_payload(payload: str) -> Dict[str, Any]:
    """Decode payload; raises TransferFileError when invalid."""
    try:
        obj = simplejson.loads(_unb64(payload).decode())
    except ValueError:
        raise TransferFileError("Invalid payload")              # pylint: disable=W0707
    if not isinstance(obj, dict):
        raise TransferFileError("Invalid payload")
    return obj


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _unb64(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64: {e}")                # pylint: disable=W0707


def _as_len_prefixed_field(data: bytes) -> bytes:
    """Create length-prefixed field (length is little-endian, uint32)."""
    return int.to_bytes(len(data), 4, "little") + data


def _mf_hdr_dig(algo: str, digest: str, suffix: str = "") -> Tuple[str, str]:
    a = algo if algo == "SHA1" else algo[:3] + "-" + algo[3:]
    return f"{a}-Digest{suffix}", digest


def _mf_hdrs_join(hs: Tuple[Tuple[str, str], ...], endl: str = "\r\n", wrap: int = 70) -> str:
    return "".join(_mf_hdr_wrap(f"{k}: {v}", endl, wrap) + endl for k, v in hs) + endl


def _mf_hdr_wrap(s: str, endl: str, wrap: int) -> str:
    r"""
    Wrap manifest header line (continuation lines start with a space).

    >>> _mf_hdr_wrap("Name: " + "x" * 70, "\r\n", 70)
    'Name: xxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx\r\n xxxxxx'

    """
    w, t = wrap, ""
    while len(s) > w:
        t += s[:w] + endl + " "
        s = s[w:]
        w = wrap - 1    # account for the space
    return t + s

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
