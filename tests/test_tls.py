# SPDX-License-Identifier: MIT
"""
Trust-chain Tests

Covers:
1. PEM decoding and credential validation
2. Chain verification (direct, via intermediates, name matching, unknown authority)
3. Validity period and expiring-soon checks
4. Issuer and trust anchor algorithm requirements
5. Issuer material lookup by scheme

Run with:
    pytest tests/test_tls.py -v
"""

from datetime import timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from conftest import NOW, FakeKubeAPI, key_pem, make_cert, make_key, pem
from mesh_health.config import IDENTITY_ISSUER_SECRET_NAME, MeshValues
from mesh_health.errors import MeshHealthError
from mesh_health.issuercerts import (
    IssuerCertData,
    check_expiring_soon,
    check_issuer_algorithm,
    check_trust_anchor_algorithm,
    check_validity_period,
    collect_certificate_errors,
    fetch_issuer_cert_data,
)
from mesh_health.tls import (
    CertificateError,
    decode_pem_certificates,
    describe,
    same_certificate,
    validate_and_create_creds,
    verify_chain,
)


# ============================================================================
# DECODING
# ============================================================================

class TestDecoding:

    def test_decodes_bundle(self, trust_root):
        certs = decode_pem_certificates(pem(trust_root.anchor, trust_root.issuer))
        assert [c.serial_number for c in certs] == [trust_root.anchor.serial_number, trust_root.issuer.serial_number]

    def test_empty_bundle(self):
        with pytest.raises(CertificateError, match="no PEM certificates found"):
            decode_pem_certificates("   ")

    def test_garbage(self):
        with pytest.raises(CertificateError):
            decode_pem_certificates("-----BEGIN CERTIFICATE-----\nnope\n-----END CERTIFICATE-----\n")

    def test_creds_with_intermediates(self, trust_root):
        leaf, leaf_key = make_cert("leaf", issuer=trust_root.issuer, issuer_key=trust_root.issuer_key)
        cred = validate_and_create_creds(pem(leaf, trust_root.issuer), key_pem(leaf_key))
        assert cred.certificate == leaf
        assert cred.trust_chain == [trust_root.issuer]

    def test_mismatched_key(self, trust_root):
        with pytest.raises(CertificateError, match="private key does not match public key"):
            validate_and_create_creds(pem(trust_root.issuer), key_pem(make_key()))

    def test_same_certificate_ignores_encoding(self, trust_root):
        der = trust_root.anchor.public_bytes(serialization.Encoding.DER)
        reloaded = x509.load_der_x509_certificate(der)
        assert same_certificate(trust_root.anchor, reloaded)
        assert not same_certificate(trust_root.anchor, trust_root.issuer)

    def test_describe(self):
        cert, _ = make_cert("identity.linkerd.cluster.local", serial=42)
        assert describe(cert) == "42 identity.linkerd.cluster.local"


# ============================================================================
# CHAIN VERIFICATION
# ============================================================================

class TestVerifyChain:

    def test_issued_directly(self, trust_root):
        chain = verify_chain(trust_root.issuer, [trust_root.anchor])
        assert chain == [trust_root.issuer, trust_root.anchor]

    def test_through_intermediate(self, trust_root):
        leaf, _ = make_cert("web", issuer=trust_root.issuer, issuer_key=trust_root.issuer_key, dns=["web.ns.svc"])
        chain = verify_chain(leaf, [trust_root.anchor], intermediates=[trust_root.issuer], name="web.ns.svc")
        assert chain == [leaf, trust_root.issuer, trust_root.anchor]

    def test_anchor_itself(self, trust_root):
        assert verify_chain(trust_root.anchor, [trust_root.anchor]) == [trust_root.anchor]

    def test_unknown_authority(self, trust_root):
        other, _ = make_cert("other-root", ca=True)
        with pytest.raises(CertificateError, match="certificate signed by unknown authority"):
            verify_chain(trust_root.issuer, [other])

    def test_missing_intermediate(self, trust_root):
        leaf, _ = make_cert("web", issuer=trust_root.issuer, issuer_key=trust_root.issuer_key)
        with pytest.raises(CertificateError, match="unknown authority"):
            verify_chain(leaf, [trust_root.anchor])

    def test_name_mismatch(self, trust_root):
        leaf, _ = make_cert("web", issuer=trust_root.anchor, issuer_key=trust_root.anchor_key, dns=["web.ns.svc"])
        with pytest.raises(CertificateError, match="not api.ns.svc"):
            verify_chain(leaf, [trust_root.anchor], name="api.ns.svc")

    def test_expired_leaf(self, trust_root):
        leaf, _ = make_cert(
            "old", issuer=trust_root.anchor, issuer_key=trust_root.anchor_key,
            not_before=NOW - timedelta(days=30), not_after=NOW - timedelta(days=1),
        )
        with pytest.raises(CertificateError, match="expired or is not yet valid"):
            verify_chain(leaf, [trust_root.anchor])

    def test_no_anchors(self, trust_root):
        with pytest.raises(CertificateError, match="no trust anchors"):
            verify_chain(trust_root.issuer, [])


# ============================================================================
# TIME CHECKS
# ============================================================================

class TestTimeChecks:

    def test_valid(self, trust_root):
        check_validity_period(trust_root.anchor)
        check_expiring_soon(trust_root.anchor)

    def test_not_yet_valid(self):
        cert, _ = make_cert("future", not_before=NOW + timedelta(days=1), not_after=NOW + timedelta(days=400))
        with pytest.raises(MeshHealthError, match="not valid before"):
            check_validity_period(cert)

    def test_expired(self):
        cert, _ = make_cert("past", not_before=NOW - timedelta(days=10), not_after=NOW - timedelta(days=1))
        with pytest.raises(MeshHealthError, match="not valid anymore. Expired on"):
            check_validity_period(cert)

    def test_expiring_soon(self):
        cert, _ = make_cert("soon", not_after=NOW + timedelta(days=30))
        with pytest.raises(MeshHealthError, match="will expire on"):
            check_expiring_soon(cert)

    def test_collect_lists_each_failure(self):
        good, _ = make_cert("good")
        bad, _ = make_cert("bad", serial=7, not_before=NOW - timedelta(days=10), not_after=NOW - timedelta(days=1))
        problems = collect_certificate_errors([good, bad], check_validity_period)
        assert len(problems) == 1
        assert problems[0].startswith("* 7 bad not valid anymore")


# ============================================================================
# ALGORITHMS
# ============================================================================

class TestAlgorithms:

    def test_ecdsa_issuer_accepted(self, trust_root):
        check_issuer_algorithm(trust_root.issuer)

    def test_rsa_issuer_rejected(self):
        cert, _ = make_cert("rsa", key=make_key("rsa"))
        with pytest.raises(MeshHealthError, match="must use ECDSA for public key algorithm"):
            check_issuer_algorithm(cert)

    def test_p384_rejected(self):
        cert, _ = make_cert("p384", key=make_key("p384"))
        with pytest.raises(MeshHealthError, match="must use P-256 curve"):
            check_trust_anchor_algorithm(cert)

    def test_rsa_anchor_accepted(self):
        cert, _ = make_cert("rsa", key=make_key("rsa", 2048))
        check_trust_anchor_algorithm(cert)

    def test_small_rsa_anchor_rejected(self):
        cert, _ = make_cert("rsa", key=make_key("rsa", 3072))
        with pytest.raises(MeshHealthError, match="instead 3072 bit public key was used"):
            check_trust_anchor_algorithm(cert)


# ============================================================================
# ISSUER MATERIAL
# ============================================================================

class TestIssuerData:

    def test_linkerd_scheme(self, trust_root):
        kube = FakeKubeAPI()
        kube.add_secret("linkerd", IDENTITY_ISSUER_SECRET_NAME, {
            "crt.pem": pem(trust_root.issuer), "key.pem": key_pem(trust_root.issuer_key),
        })
        values = MeshValues(identity_trust_anchors_pem=pem(trust_root.anchor))
        data = fetch_issuer_cert_data(kube, "linkerd", values)
        assert data.trust_anchors == pem(trust_root.anchor)
        assert data.expiry == trust_root.issuer.not_valid_after_utc
        assert data.verify_and_build_creds().certificate == trust_root.issuer

    def test_external_scheme(self, trust_root):
        kube = FakeKubeAPI()
        kube.add_secret("linkerd", IDENTITY_ISSUER_SECRET_NAME, {
            "ca.crt": pem(trust_root.anchor),
            "tls.crt": pem(trust_root.issuer),
            "tls.key": key_pem(trust_root.issuer_key),
        })
        data = fetch_issuer_cert_data(kube, "linkerd", MeshValues(issuer_scheme="kubernetes.io/tls"))
        assert data.trust_anchors == pem(trust_root.anchor)

    def test_missing_key(self, trust_root):
        kube = FakeKubeAPI()
        kube.add_secret("linkerd", IDENTITY_ISSUER_SECRET_NAME, {"crt.pem": pem(trust_root.issuer)})
        with pytest.raises(MeshHealthError, match="key key.pem containing the issuer key needs to exist"):
            fetch_issuer_cert_data(kube, "linkerd", MeshValues())

    def test_issuer_must_be_ca(self, trust_root):
        leaf, leaf_key = make_cert("leaf", issuer=trust_root.anchor, issuer_key=trust_root.anchor_key)
        data = IssuerCertData(pem(trust_root.anchor), pem(leaf), key_pem(leaf_key))
        with pytest.raises(MeshHealthError, match="issuer cert is not a CA"):
            data.verify_and_build_creds()
