# SPDX-License-Identifier: MIT

"""PEM decoding, credentials and chain-of-trust verification."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from mesh_health.errors import MeshHealthError

logger = logging.getLogger(__name__)

# Longest issuer chain walked before giving up.
MAX_CHAIN_DEPTH = 8


class CertificateError(MeshHealthError):
    """Certificate material could not be decoded or did not verify."""


def _as_bytes(pem: str | bytes) -> bytes:
    return pem.encode() if isinstance(pem, str) else pem


def decode_pem_certificates(pem: str | bytes) -> list[x509.Certificate]:
    data = _as_bytes(pem).strip()
    if not data:
        raise CertificateError("no PEM certificates found")
    try:
        return x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        raise CertificateError(f"failed to decode PEM certificates: {exc}") from exc


def common_name(cert: x509.Certificate) -> str:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else ""


def dns_names(cert: x509.Certificate) -> list[str]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.DNSName)


def is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def describe(cert: x509.Certificate) -> str:
    """``<serial> <common name>``, used when listing certificates in errors."""
    return f"{cert.serial_number} {common_name(cert)}"


def same_certificate(a: x509.Certificate, b: x509.Certificate) -> bool:
    """Certificates are equal when their signatures match, regardless of PEM encoding."""
    return a.signature == b.signature


def _directly_issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    if cert.issuer != issuer.subject:
        return False
    try:
        cert.verify_directly_issued_by(issuer)
    except (InvalidSignature, ValueError, TypeError):
        return False
    return True


def _within_validity(cert: x509.Certificate, now: datetime) -> bool:
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


def verify_chain(leaf: x509.Certificate, anchors: list[x509.Certificate],
                 intermediates: list[x509.Certificate] | None = None,
                 name: str = "", now: datetime | None = None) -> list[x509.Certificate]:
    """Verify ``leaf`` chains to one of ``anchors`` and return the chain.

    The returned chain starts with the leaf and ends with the anchor. When
    ``name`` is set it must be one of the leaf's DNS SANs.
    """
    now = now or datetime.now(timezone.utc)
    if not anchors:
        raise CertificateError("no trust anchors to verify against")
    if not _within_validity(leaf, now):
        raise CertificateError(
            f"certificate has expired or is not yet valid: current time {now.isoformat()} "
            f"is outside {leaf.not_valid_before_utc.isoformat()} - {leaf.not_valid_after_utc.isoformat()}"
        )
    if name and name not in dns_names(leaf):
        raise CertificateError(
            f"certificate is valid for {', '.join(dns_names(leaf)) or 'no DNS names'}, not {name}"
        )

    chain = [leaf]
    current = leaf
    pool = list(intermediates or [])
    for _ in range(MAX_CHAIN_DEPTH):
        for anchor in anchors:
            if same_certificate(current, anchor) or _directly_issued_by(current, anchor):
                if not same_certificate(current, anchor):
                    chain.append(anchor)
                return chain
        parent = next((c for c in pool if _directly_issued_by(current, c)), None)
        if parent is None:
            break
        if not _within_validity(parent, now):
            raise CertificateError(f"intermediate certificate {describe(parent)} is outside its validity period")
        pool.remove(parent)
        chain.append(parent)
        current = parent
    raise CertificateError(f"x509: certificate signed by unknown authority ({describe(leaf)})")


@dataclass
class Cred:
    """A certificate, its private key and any intermediates bundled with it."""

    certificate: x509.Certificate
    private_key: object = field(repr=False)
    trust_chain: list[x509.Certificate] = field(default_factory=list)

    def verify(self, anchors: list[x509.Certificate], name: str = "", now: datetime | None = None) -> None:
        verify_chain(self.certificate, anchors, intermediates=self.trust_chain, name=name, now=now)


def _public_bytes(key) -> bytes:
    return key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)


def validate_and_create_creds(crt_pem: str | bytes, key_pem: str | bytes) -> Cred:
    certs = decode_pem_certificates(crt_pem)
    try:
        key = serialization.load_pem_private_key(_as_bytes(key_pem), password=None)
    except (ValueError, TypeError) as exc:
        raise CertificateError(f"failed to decode private key: {exc}") from exc
    if _public_bytes(key.public_key()) != _public_bytes(certs[0].public_key()):
        raise CertificateError("tls: private key does not match public key")
    return Cred(certificate=certs[0], private_key=key, trust_chain=certs[1:])
