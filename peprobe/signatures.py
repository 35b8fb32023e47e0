"""
Authenticode signature extraction.

The Security data directory holds WIN_CERTIFICATE records addressed by raw
file offset. PKCS#7 SignedData blobs are walked with pyasn1 (RFC 2315 types)
to find every signer, countersigner and nested signature; each signer's
certificate is decoded with cryptography. Nothing here checks trust.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import SignatureAlgorithmOID
from pyasn1.codec.der import decoder as der_decoder
from pyasn1.codec.der import encoder as der_encoder
from pyasn1.error import PyAsn1Error
from pyasn1_modules import rfc2315

from peprobe.constants import WIN_CERT_TYPE_PKCS_SIGNED_DATA
from peprobe.cursor import ByteCursor, checked_add
from peprobe.errors import err

logger = logging.getLogger(__name__)

WIN_CERTIFICATE_HEADER_SIZE = 8
MAX_SIGNATURE_RECORDS = 64

OID_SIGNED_DATA = "1.2.840.113549.1.7.2"
OID_COUNTERSIGNATURE = "1.2.840.113549.1.9.6"
OID_NESTED_SIGNATURE = "1.3.6.1.4.1.311.2.4.1"
OID_RFC3161_TIMESTAMP = "1.3.6.1.4.1.311.3.3.1"

KIND_SIGNER = "signer"
KIND_NESTED = "nested"
KIND_COUNTERSIGNER = "countersigner"
KIND_CERTIFICATE = "certificate"


@dataclass(frozen=True)
class SignatureRecord:
    issuer: str
    subject: str
    version: int
    algorithm: str
    serial: str
    not_before: int
    not_after: int
    thumbprint: str
    kind: str = KIND_SIGNER

    def valid_on(self, timestamp: int) -> bool:
        return self.not_before <= timestamp <= self.not_after

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issuer": self.issuer,
            "subject": self.subject,
            "version": self.version,
            "algorithm": self.algorithm,
            "serial": self.serial,
            "not_before": self.not_before,
            "not_after": self.not_after,
            "thumbprint": self.thumbprint,
            "kind": self.kind,
        }


def format_serial(serial: int) -> str:
    """Colon-separated lowercase hex of the serial number magnitude."""
    serial = abs(serial)
    raw = serial.to_bytes(max(1, (serial.bit_length() + 7) // 8), "big")
    return ":".join(f"{b:02x}" for b in raw)


_SIGNATURE_ALGORITHM_NAMES = {
    SignatureAlgorithmOID.RSA_WITH_MD5: "md5WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA1: "sha1WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA224: "sha224WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA256: "sha256WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA384: "sha384WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA512: "sha512WithRSAEncryption",
    SignatureAlgorithmOID.RSASSA_PSS: "RSASSA-PSS",
    SignatureAlgorithmOID.ECDSA_WITH_SHA1: "ecdsa-with-SHA1",
    SignatureAlgorithmOID.ECDSA_WITH_SHA224: "ecdsa-with-SHA224",
    SignatureAlgorithmOID.ECDSA_WITH_SHA256: "ecdsa-with-SHA256",
    SignatureAlgorithmOID.ECDSA_WITH_SHA384: "ecdsa-with-SHA384",
    SignatureAlgorithmOID.ECDSA_WITH_SHA512: "ecdsa-with-SHA512",
    SignatureAlgorithmOID.DSA_WITH_SHA1: "dsa-with-sha1",
    SignatureAlgorithmOID.DSA_WITH_SHA224: "dsa-with-sha224",
    SignatureAlgorithmOID.DSA_WITH_SHA256: "dsa-with-sha256",
    SignatureAlgorithmOID.ED25519: "ed25519",
    SignatureAlgorithmOID.ED448: "ed448",
}


def _algorithm_name(cert: x509.Certificate) -> str:
    oid = cert.signature_algorithm_oid
    return _SIGNATURE_ALGORITHM_NAMES.get(oid, oid.dotted_string)


def record_from_certificate(cert: x509.Certificate, kind: str) -> SignatureRecord:
    not_before = int(cert.not_valid_before_utc.timestamp())
    not_after = int(cert.not_valid_after_utc.timestamp())
    return SignatureRecord(
        issuer=cert.issuer.rfc4514_string(),
        subject=cert.subject.rfc4514_string(),
        version=cert.version.value + 1,
        algorithm=_algorithm_name(cert),
        serial=format_serial(cert.serial_number),
        not_before=not_before,
        not_after=not_after,
        thumbprint=cert.fingerprint(hashes.SHA1()).hex(),
        kind=kind,
    )


def der_length(blob: bytes) -> Optional[int]:
    """Total length of the leading DER TLV, or None if the header is malformed."""
    if len(blob) < 2:
        return None
    first = blob[1]
    if first < 0x80:
        total = 2 + first
    else:
        n = first & 0x7F
        if n == 0 or n > 4 or len(blob) < 2 + n:
            return None
        total = 2 + n + int.from_bytes(blob[2 : 2 + n], "big")
    return total if total <= len(blob) else None


class _SignatureWalker:
    def __init__(self, *, max_depth: int) -> None:
        self.max_depth = max_depth
        self.records: List[SignatureRecord] = []
        self.errors: List[Dict[str, Any]] = []

    def _add(self, cert: x509.Certificate, kind: str) -> None:
        if len(self.records) >= MAX_SIGNATURE_RECORDS:
            return
        try:
            self.records.append(record_from_certificate(cert, kind))
        except (ValueError, x509.InvalidVersion) as e:
            self.errors.append(err("E_PE_SIG_CERT_UNREADABLE", f"Certificate fields unreadable: {type(e).__name__}"))

    def walk(self, blob: bytes, kind: str, depth: int = 0) -> None:
        if depth > self.max_depth:
            self.errors.append(err("E_PE_SIG_TOO_DEEP", f"Nested signatures deeper than max_depth={self.max_depth}."))
            return

        size = der_length(blob)
        if size is None:
            self.errors.append(err("E_PE_SIG_BAD_DER", "Signature blob is not a DER structure."))
            return
        blob = blob[:size]

        try:
            certs = pkcs7.load_der_pkcs7_certificates(blob)
        except (ValueError, UnsupportedAlgorithm) as e:
            self.errors.append(err("E_PE_SIG_CERTS_UNREADABLE", f"PKCS#7 certificates unreadable: {type(e).__name__}"))
            certs = []

        try:
            content_info, _ = der_decoder.decode(blob, asn1Spec=rfc2315.ContentInfo())
            content_type = str(content_info["contentType"])
            if content_type != OID_SIGNED_DATA:
                self.errors.append(err("E_PE_SIG_NOT_SIGNED_DATA", "PKCS#7 content is not SignedData.", content_type=content_type))
                return
            signed_data, _ = der_decoder.decode(content_info["content"].asOctets(), asn1Spec=rfc2315.SignedData())
            signer_infos = list(signed_data["signerInfos"])
        except PyAsn1Error as e:
            # Signer info is unreadable; surface the bare certificates instead.
            logger.debug("SignedData decode failed: %s", e)
            self.errors.append(err("E_PE_SIG_SIGNERINFO_UNREADABLE", "SignedData signer information could not be decoded."))
            for cert in certs:
                self._add(cert, KIND_CERTIFICATE)
            return

        for signer_info in signer_infos:
            self._signer(signer_info, certs, kind, depth)

    def _signer(self, signer_info: Any, certs: Sequence[x509.Certificate], kind: str, depth: int) -> None:
        cert = _find_signer_certificate(signer_info, certs)
        if cert is None:
            self.errors.append(err("E_PE_SIG_SIGNER_CERT_MISSING", "Signer certificate not present in SignedData."))
        else:
            self._add(cert, kind)

        attrs = signer_info["unauthenticatedAttributes"]
        if not attrs.isValue:
            return
        for attr in attrs:
            attr_type = str(attr[0])
            for value in attr[1]:
                raw = value.asOctets()
                if attr_type == OID_NESTED_SIGNATURE:
                    self.walk(raw, KIND_NESTED, depth + 1)
                elif attr_type == OID_RFC3161_TIMESTAMP:
                    self.walk(raw, KIND_COUNTERSIGNER, depth + 1)
                elif attr_type == OID_COUNTERSIGNATURE:
                    self._countersigner(raw, certs)

    def _countersigner(self, raw: bytes, certs: Sequence[x509.Certificate]) -> None:
        try:
            counter_info, _ = der_decoder.decode(raw, asn1Spec=rfc2315.SignerInfo())
        except PyAsn1Error:
            self.errors.append(err("E_PE_SIG_COUNTERSIGNATURE_UNREADABLE", "Countersignature could not be decoded."))
            return
        cert = _find_signer_certificate(counter_info, certs)
        if cert is None:
            self.errors.append(err("E_PE_SIG_SIGNER_CERT_MISSING", "Countersigner certificate not present in SignedData."))
            return
        self._add(cert, KIND_COUNTERSIGNER)


def _find_signer_certificate(signer_info: Any, certs: Sequence[x509.Certificate]) -> Optional[x509.Certificate]:
    ias = signer_info["issuerAndSerialNumber"]
    serial = int(ias["serialNumber"])
    candidates = [c for c in certs if c.serial_number == serial]
    if len(candidates) > 1:
        issuer_der = der_encoder.encode(ias["issuer"])
        for c in candidates:
            if c.issuer.public_bytes() == issuer_der:
                return c
    return candidates[0] if candidates else None


def parse_certificate_table(
    cur: ByteCursor,
    *,
    security_offset: int,
    security_size: int,
    max_certificates: int = 16,
    max_depth: int = 4,
) -> Tuple[List[SignatureRecord], List[Dict[str, Any]]]:
    """Walk WIN_CERTIFICATE entries; the directory address is a file offset."""
    errors: List[Dict[str, Any]] = []

    end = checked_add(security_offset, security_size)
    if end is None or security_offset >= len(cur):
        return [], [
            err(
                "E_PE_SECURITY_OOB",
                "Security directory lies outside the file.",
                security_offset=security_offset,
                security_size=security_size,
            )
        ]
    if end > len(cur):
        errors.append(err("E_PE_SECURITY_TRUNCATED", "Security directory extends beyond end of file.", security_offset=security_offset))
        end = len(cur)

    walker = _SignatureWalker(max_depth=max_depth)
    off = security_offset
    for index in range(max_certificates + 1):
        if off + WIN_CERTIFICATE_HEADER_SIZE > end:
            break
        if index == max_certificates:
            errors.append(err("E_PE_SECURITY_TOO_MANY_ENTRIES", f"Certificate entries exceeded max_certificates={max_certificates}."))
            break

        dw_length = cur.u32(off)
        cert_type = cur.u16(off + 6)
        if dw_length is None or dw_length < WIN_CERTIFICATE_HEADER_SIZE or off + dw_length > end:
            errors.append(err("E_PE_SECURITY_BAD_ENTRY", "WIN_CERTIFICATE length invalid.", entry_offset=off, dw_length=dw_length))
            break

        if cert_type == WIN_CERT_TYPE_PKCS_SIGNED_DATA:
            blob = cur.read(off + WIN_CERTIFICATE_HEADER_SIZE, dw_length - WIN_CERTIFICATE_HEADER_SIZE) or b""
            walker.walk(blob, KIND_SIGNER)
        else:
            logger.debug("skipping WIN_CERTIFICATE type %#x at %#x", cert_type, off)

        # Entries are quadword aligned.
        off += (dw_length + 7) & ~7

    errors.extend(walker.errors)
    return walker.records, errors
