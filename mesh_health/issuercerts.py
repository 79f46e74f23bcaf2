# SPDX-License-Identifier: MIT

"""Trust-anchor and issuer certificate requirements."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import SignatureAlgorithmOID

from mesh_health.config import (
    CERT_KEY_NAME,
    IDENTITY_ISSUER_CRT_NAME,
    IDENTITY_ISSUER_KEY_NAME,
    IDENTITY_ISSUER_SCHEME_LINKERD,
    IDENTITY_ISSUER_SECRET_NAME,
    IDENTITY_ISSUER_TRUST_ANCHORS_NAME_EXTERNAL,
    KEY_KEY_NAME,
)
from mesh_health.errors import MeshHealthError
from mesh_health.tls import Cred, decode_pem_certificates, describe, is_ca, validate_and_create_creds

logger = logging.getLogger(__name__)

EXPIRATION_WARNING_THRESHOLD = timedelta(days=60)

KEY_MISSING_ERROR = "key {key} containing the {what} needs to exist in secret {secret} if --identity-external-issuer={external}"

_SIGNATURE_NAMES = {
    SignatureAlgorithmOID.ECDSA_WITH_SHA256: "ECDSA-SHA256",
    SignatureAlgorithmOID.RSA_WITH_SHA256: "SHA256-RSA",
}


def _signature_name(cert: x509.Certificate) -> str:
    oid = cert.signature_algorithm_oid
    return _SIGNATURE_NAMES.get(oid, oid.dotted_string)


def _rfc3339(when: datetime) -> str:
    return when.strftime("%Y-%m-%dT%H:%M:%SZ")


# =====================================================================
# Time checks
# =====================================================================

def check_validity_period(cert: x509.Certificate, now: datetime | None = None) -> None:
    now = now or datetime.now(timezone.utc)
    if now < cert.not_valid_before_utc:
        raise MeshHealthError(f"not valid before: {_rfc3339(cert.not_valid_before_utc)}")
    if now > cert.not_valid_after_utc:
        raise MeshHealthError(f"not valid anymore. Expired on {_rfc3339(cert.not_valid_after_utc)}")


def check_expiring_soon(cert: x509.Certificate, now: datetime | None = None) -> None:
    now = now or datetime.now(timezone.utc)
    if now + EXPIRATION_WARNING_THRESHOLD > cert.not_valid_after_utc:
        raise MeshHealthError(f"will expire on {_rfc3339(cert.not_valid_after_utc)}")


# =====================================================================
# Algorithm checks
# =====================================================================

def _check_ecdsa(cert: x509.Certificate) -> None:
    key = cert.public_key()
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise MeshHealthError(f"expected ecdsa public key but got {type(key).__name__}")
    if not isinstance(key.curve, ec.SECP256R1):
        raise MeshHealthError(f"must use P-256 curve for public key, instead P-{key.curve.key_size} was used")
    if cert.signature_algorithm_oid not in (
        SignatureAlgorithmOID.ECDSA_WITH_SHA256, SignatureAlgorithmOID.RSA_WITH_SHA256,
    ):
        raise MeshHealthError(f"must be signed by an ECDSA P-256 key, instead {_signature_name(cert)} was used")


def _check_rsa(cert: x509.Certificate) -> None:
    key = cert.public_key()
    if not isinstance(key, rsa.RSAPublicKey):
        raise MeshHealthError(f"expected rsa public key but got {type(key).__name__}")
    if key.key_size not in (2048, 4096):
        raise MeshHealthError(
            f"RSA must use at least 2048 bit public key, instead {key.key_size} bit public key was used"
        )
    if cert.signature_algorithm_oid != SignatureAlgorithmOID.RSA_WITH_SHA256:
        raise MeshHealthError(f"must be signed by an RSA 2048/4096 bit key, instead {_signature_name(cert)} was used")


def check_issuer_algorithm(cert: x509.Certificate) -> None:
    """Issuer certificates must be ECDSA P-256."""
    key = cert.public_key()
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise MeshHealthError(
            f"must use ECDSA for public key algorithm, instead {type(key).__name__} was used"
        )
    _check_ecdsa(cert)


def check_trust_anchor_algorithm(cert: x509.Certificate) -> None:
    """Trust anchors may be ECDSA P-256 or RSA 2048/4096."""
    key = cert.public_key()
    if isinstance(key, ec.EllipticCurvePublicKey):
        _check_ecdsa(cert)
    elif isinstance(key, rsa.RSAPublicKey):
        _check_rsa(cert)
    else:
        raise MeshHealthError(
            f"trust anchor must use ECDSA or RSA for public key algorithm, instead {type(key).__name__} was used"
        )


def collect_certificate_errors(certs: list[x509.Certificate], check) -> list[str]:
    """Run ``check`` over ``certs``; return ``* <serial> <cn> <err>`` lines for failures."""
    problems = []
    for cert in certs:
        try:
            check(cert)
        except MeshHealthError as exc:
            problems.append(f"* {describe(cert)} {exc}")
    return problems


# =====================================================================
# Issuer material
# =====================================================================

@dataclass
class IssuerCertData:
    trust_anchors: str
    issuer_crt: str
    issuer_key: str
    expiry: datetime | None = None

    def verify_and_build_creds(self, now: datetime | None = None) -> Cred:
        try:
            creds = validate_and_create_creds(self.issuer_crt, self.issuer_key)
        except MeshHealthError as exc:
            raise MeshHealthError(f"failed to read CA: {exc}") from exc
        check_validity_period(creds.certificate, now)
        check_issuer_algorithm(creds.certificate)
        if not is_ca(creds.certificate):
            raise MeshHealthError("issuer cert is not a CA")
        creds.verify(decode_pem_certificates(self.trust_anchors), now=now)
        return creds


def _require(data: dict[str, bytes], key: str, what: str, external: bool) -> str:
    if key not in data:
        raise MeshHealthError(KEY_MISSING_ERROR.format(
            key=key, what=what, secret=IDENTITY_ISSUER_SECRET_NAME, external=str(external).lower(),
        ))
    return data[key].decode()


def fetch_issuer_data(kube_api, trust_anchors: str, namespace: str) -> IssuerCertData:
    """Issuer data from a ``linkerd.io/tls`` schemed secret."""
    data = kube_api.get_secret_data(namespace, IDENTITY_ISSUER_SECRET_NAME)
    crt = _require(data, IDENTITY_ISSUER_CRT_NAME, "issuer certificate", False)
    key = _require(data, IDENTITY_ISSUER_KEY_NAME, "issuer key", True)
    try:
        cert = decode_pem_certificates(crt)[0]
    except MeshHealthError as exc:
        raise MeshHealthError(f"could not parse issuer certificate: {exc}") from exc
    return IssuerCertData(trust_anchors, crt, key, cert.not_valid_after_utc)


def fetch_external_issuer_data(kube_api, namespace: str) -> IssuerCertData:
    """Issuer data from a ``kubernetes.io/tls`` schemed secret."""
    data = kube_api.get_secret_data(namespace, IDENTITY_ISSUER_SECRET_NAME)
    anchors = _require(data, IDENTITY_ISSUER_TRUST_ANCHORS_NAME_EXTERNAL, "trust anchors", True)
    crt = _require(data, CERT_KEY_NAME, "issuer certificate", True)
    key = _require(data, KEY_KEY_NAME, "issuer key", True)
    try:
        cert = decode_pem_certificates(crt)[0]
    except MeshHealthError as exc:
        raise MeshHealthError(f"could not parse issuer certificate: {exc}") from exc
    return IssuerCertData(anchors, crt, key, cert.not_valid_after_utc)


def fetch_issuer_cert_data(kube_api, namespace: str, values) -> IssuerCertData:
    scheme = values.issuer_scheme if values else IDENTITY_ISSUER_SCHEME_LINKERD
    if not scheme or scheme == IDENTITY_ISSUER_SCHEME_LINKERD:
        anchors = values.identity_trust_anchors_pem if values else ""
        return fetch_issuer_data(kube_api, anchors, namespace)
    return fetch_external_issuer_data(kube_api, namespace)
